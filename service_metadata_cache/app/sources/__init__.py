"""
Sources of catalog data: the abstract interfaces the caches depend on and an
HTTP implementation against the catalog search service.
"""
