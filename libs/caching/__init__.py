"""
Redis access shared by the researcher's result cache and event stream.

Follows the async-first pattern: one pooled client per process, graceful
degradation when Redis is not configured.
"""

from libs.caching.redis_client import close_redis_client, get_redis_client

__all__ = ["close_redis_client", "get_redis_client"]
