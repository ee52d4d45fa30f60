"""
Revision format maps: compressed multi-format metadata for one entity revision.
"""
