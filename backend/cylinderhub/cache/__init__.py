"""
Cache package initialization.

Provides the Redis connection used for event fan-out and the mirror
sync lock.
"""
