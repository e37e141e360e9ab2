"""
Redis-based rate limiting for API endpoints.
Implements a fixed window counter per actor and scope.

Authenticated requests are counted per user, anonymous ones per client IP.
When Redis is unreachable the limiter fails open.
"""
import logging
from functools import lru_cache, wraps
from typing import Optional

import redis
from django.conf import settings
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis_client() -> Optional[redis.Redis]:
    """Connect on first use; None disables limiting for this process."""
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        client.ping()
        return client
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
        return None


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


def rate_limit_identity(request) -> str:
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    return f"ip:{get_client_ip(request)}"


def rate_limit(scope: str, max_requests: Optional[int] = None, window_seconds: Optional[int] = None):
    """
    Redis-based rate limiting decorator for DRF view methods.

    Limits default to ``settings.RATE_LIMIT`` (``MAX_REQUESTS``, ``WINDOW_SECONDS``).

    Usage:
        @rate_limit('place_order', max_requests=20, window_seconds=60)
        def create(self, request, *args, **kwargs):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(self, request, *args, **kwargs):
            client = get_redis_client() if settings.RATE_LIMIT_ENABLED else None
            # Skip rate limiting if disabled or Redis unavailable
            if client is None:
                return view_func(self, request, *args, **kwargs)

            limit = max_requests or settings.RATE_LIMIT['MAX_REQUESTS']
            window = window_seconds or settings.RATE_LIMIT['WINDOW_SECONDS']
            key = f"rate_limit:{scope}:{rate_limit_identity(request)}"

            try:
                current_count = client.incr(key)
                if current_count == 1:
                    client.expire(key, window)
                ttl = client.ttl(key)
            except redis.RedisError as e:
                logger.error(f"Redis error in rate limiting: {e}")
                return view_func(self, request, *args, **kwargs)

            if current_count > limit:
                logger.warning(f"Rate limit exceeded for {key}: {current_count}/{limit}")
                return Response(
                    {
                        'error': 'RateLimitExceeded',
                        'detail': f'Maximum {limit} requests per {window} seconds allowed.',
                        'retry_after': ttl
                    },
                    status=status.HTTP_429_TOO_MANY_REQUESTS,
                    headers={
                        'X-RateLimit-Limit': str(limit),
                        'X-RateLimit-Remaining': '0',
                        'X-RateLimit-Reset': str(ttl),
                        'Retry-After': str(ttl)
                    }
                )

            response = view_func(self, request, *args, **kwargs)
            response['X-RateLimit-Limit'] = str(limit)
            response['X-RateLimit-Remaining'] = str(max(0, limit - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
            return response

        return wrapper
    return decorator
