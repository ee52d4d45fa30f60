"""
Cache of collection projections used when evaluating granule ACLs.
"""
