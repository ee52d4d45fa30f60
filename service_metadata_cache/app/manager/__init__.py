"""
Refresh orchestration for the collection metadata cache.
"""
