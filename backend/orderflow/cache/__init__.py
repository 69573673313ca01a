"""
Cache package initialization.

Provides the Redis client used for distributed order locks.
"""
