"""
Cache services: entry store, expiry, invalidation, stampede guard and
the CacheManager facade that exposes the read/write strategies.
"""
