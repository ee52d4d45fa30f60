"""
Scheduled jobs that keep the caches fresh.
"""
