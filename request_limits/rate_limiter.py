"""
Dual-scope (IP + user) fixed window rate limiter.
Counters live in the process-local BucketStore; each worker process enforces
its limits independently.
"""
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from django.conf import settings
from rest_framework import status
from rest_framework.response import Response

from .apps import get_store

logger = logging.getLogger(__name__)

DEFAULT_FEATURE = 'this endpoint'
UNKNOWN_IP = 'unknown'

# first present wins
IP_HEADERS = (
    'cf-connecting-ip',
    'x-forwarded-for',
    'true-client-ip',
    'x-real-ip',
)


@dataclass
class RateLimitConfig:
    limit_per_ip: Optional[int] = None
    limit_per_user: Optional[int] = None
    window_ms: Optional[int] = None
    path_override: Optional[str] = None
    user_id: Optional[str] = None
    feature: Optional[str] = None


@dataclass
class RateLimitResult:
    ok: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int
    reason: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


def get_client_ip(request):
    """Best-effort client IP, handling CDNs and proxies."""
    for name in IP_HEADERS:
        value = request.headers.get(name)
        if not value:
            continue
        if name == 'x-forwarded-for':
            value = value.split(',')[0]
        value = value.strip()
        if value:
            return value
    remote = (request.META.get('REMOTE_ADDR') or '').strip()
    return remote or UNKNOWN_IP


def _now_ms():
    return int(time.time() * 1000)


def check_rate_limit(request, config=None, store=None, now=None):
    """
    Check the request against its IP bucket and, when a user id is given,
    its user bucket. Rejections are returned, never raised.
    """
    config = config or RateLimitConfig()
    store = store if store is not None else get_store()
    now = _now_ms() if now is None else now

    path = config.path_override or request.path
    window_ms = config.window_ms or getattr(settings, 'RATE_LIMIT_WINDOW_MS', 60_000)
    limit_per_ip = config.limit_per_ip
    if limit_per_ip is None:
        limit_per_ip = getattr(settings, 'RATE_LIMIT_PER_IP', 60)
    limit_per_user = config.limit_per_user
    if limit_per_user is None:
        limit_per_user = getattr(settings, 'RATE_LIMIT_PER_USER', 45)
    feature = config.feature or DEFAULT_FEATURE

    ip = get_client_ip(request)
    user_id = str(config.user_id).strip() if config.user_id is not None else ''

    checks = []
    if limit_per_ip > 0:
        key = f'ip:{path}:{ip}'
        checks.append((key, store.consume(key, limit_per_ip, window_ms, now)))
    if user_id and limit_per_user > 0:
        key = f'user:{path}:{user_id}'
        checks.append((key, store.consume(key, limit_per_user, window_ms, now)))

    if not checks:
        return RateLimitResult(
            ok=True, limit=0, remaining=0, reset_at=now, retry_after_seconds=0
        )

    results = [r for _, r in checks]
    result = RateLimitResult(
        ok=all(r.ok for r in results),
        limit=min(r.limit for r in results),
        remaining=min(r.remaining for r in results),
        reset_at=min(r.reset_at for r in results),
        retry_after_seconds=max(r.retry_after_seconds for r in results),
    )

    if not result.ok:
        blocked_key = next(key for key, r in checks if not r.ok)
        result.reason = (
            f"Too many requests for {feature}. "
            f"Please try again in {result.retry_after_seconds} seconds."
        )
        logger.warning(
            f"Rate limit exceeded key={blocked_key} feature={feature} "
            f"retry_after={result.retry_after_seconds}s"
        )

    result.headers = get_rate_limit_headers(result)
    return result


def get_rate_limit_headers(result):
    """Build rate limit headers for response."""
    headers = {
        'X-RateLimit-Limit': str(result.limit),
        'X-RateLimit-Remaining': str(max(result.remaining, 0)),
        'X-RateLimit-Reset': str(math.ceil(result.reset_at / 1000)),
    }
    if not result.ok:
        headers['Retry-After'] = str(result.retry_after_seconds)
    return headers


def build_rate_limit_response(result):
    """429 response carrying the retry hint and the rate limit headers."""
    resp = Response(
        {
            'error': 'Too many requests',
            'message': result.reason,
            'retryAfterSeconds': result.retry_after_seconds,
        },
        status=status.HTTP_429_TOO_MANY_REQUESTS,
    )
    for k, v in (result.headers or get_rate_limit_headers(result)).items():
        resp[k] = v
    return resp
