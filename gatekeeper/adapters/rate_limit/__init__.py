"""Rate limiting adapters.

The limiter holds only counting and decision logic; where the counters live
is delegated to a throttle storage backend (session, database or Redis).
"""
