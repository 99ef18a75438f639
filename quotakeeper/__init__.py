"""Fixed-window rate limiting with Redis and memcached backends, local over-limit caching and statistics."""

__version__ = "0.1.0"