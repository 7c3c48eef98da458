"""
Tests for the request rate limiter.

Tests cover:
- Client IP derivation
- Bucket store window semantics and memory bounds
- Dual-scope (IP + user) checks
- Rate limit headers and 429 responses
- View integration and the error telemetry endpoint
"""
import threading
from unittest.mock import patch

from django.apps import apps
from django.conf import settings
from django.http import HttpRequest
from django.test import RequestFactory, SimpleTestCase, override_settings
from rest_framework import status
from rest_framework.response import Response
from rest_framework.test import APIRequestFactory, APISimpleTestCase, force_authenticate

from .apps import build_store
from .exception_handlers import RateLimitExceeded, custom_exception_handler
from .rate_limiter import (
    RateLimitConfig,
    RateLimitResult,
    build_rate_limit_response,
    check_rate_limit,
    get_client_ip,
    get_rate_limit_headers,
)
from .serializers import (
    extract_top_stack_frame,
    generate_fingerprint,
    normalize_error_message,
)
from .store import BucketStore, LockedBucketStore
from .views import RateLimitedAPIView


class ClientIpTests(SimpleTestCase):
    """Tests for get_client_ip header precedence."""

    def setUp(self):
        self.factory = RequestFactory()

    def test_forwarded_for_uses_first_entry(self):
        """X-Forwarded-For yields its first entry."""
        request = self.factory.get('/', HTTP_X_FORWARDED_FOR='1.2.3.4, 5.6.6.6')
        self.assertEqual(get_client_ip(request), '1.2.3.4')

    def test_forwarded_for_entry_is_trimmed(self):
        """Forwarded entry is stripped of whitespace."""
        request = self.factory.get('/', HTTP_X_FORWARDED_FOR='  1.2.3.4 ,5.6.6.6')
        self.assertEqual(get_client_ip(request), '1.2.3.4')

    def test_cdn_header_wins_over_forwarded_for(self):
        """CDN connecting-IP header takes precedence."""
        request = self.factory.get(
            '/',
            HTTP_CF_CONNECTING_IP='9.9.9.9',
            HTTP_X_FORWARDED_FOR='1.2.3.4',
        )
        self.assertEqual(get_client_ip(request), '9.9.9.9')

    def test_true_client_ip_before_real_ip(self):
        """True-Client-IP is read before X-Real-IP."""
        request = self.factory.get(
            '/',
            HTTP_TRUE_CLIENT_IP='7.7.7.7',
            HTTP_X_REAL_IP='8.8.8.8',
        )
        self.assertEqual(get_client_ip(request), '7.7.7.7')

    def test_real_ip_before_remote_addr(self):
        """X-Real-IP is read before the connection address."""
        request = self.factory.get('/', HTTP_X_REAL_IP='8.8.8.8', REMOTE_ADDR='10.0.0.1')
        self.assertEqual(get_client_ip(request), '8.8.8.8')

    def test_falls_back_to_remote_addr(self):
        """Connection address is used when no header is set."""
        request = self.factory.get('/', REMOTE_ADDR='10.0.0.1')
        self.assertEqual(get_client_ip(request), '10.0.0.1')

    def test_blank_header_is_skipped(self):
        """Blank header values count as absent."""
        request = self.factory.get('/', HTTP_CF_CONNECTING_IP='  ', HTTP_X_REAL_IP='8.8.8.8')
        self.assertEqual(get_client_ip(request), '8.8.8.8')

    def test_no_headers_is_unknown(self):
        """Unattributable requests share the 'unknown' identity."""
        self.assertEqual(get_client_ip(HttpRequest()), 'unknown')


class BucketStoreTests(SimpleTestCase):
    """Tests for fixed window consumption."""

    def setUp(self):
        self.store = BucketStore()

    def test_first_request_opens_window(self):
        """First request opens a window with limit - 1 remaining."""
        result = self.store.consume('k', limit=5, window_ms=60_000, now=1_000)
        self.assertTrue(result.ok)
        self.assertEqual(result.remaining, 4)
        self.assertEqual(result.reset_at, 61_000)
        self.assertEqual(result.retry_after_seconds, 60)

    def test_exactly_limit_requests_allowed(self):
        """Exactly limit requests pass; the next is rejected."""
        results = [self.store.consume('k', 3, 60_000, now=0) for _ in range(4)]
        self.assertEqual([r.ok for r in results], [True, True, True, False])
        self.assertEqual([r.remaining for r in results], [2, 1, 0, 0])

    def test_rejection_does_not_increment(self):
        """Rejected requests are not counted."""
        for _ in range(5):
            self.store.consume('k', 2, 60_000, now=0)
        self.assertEqual(self.store.get('k').count, 2)

    def test_retry_after_is_at_least_one_second(self):
        """Retry-after never drops below one second."""
        self.store.consume('k', 1, 60_000, now=0)
        result = self.store.consume('k', 1, 60_000, now=59_900)
        self.assertFalse(result.ok)
        self.assertEqual(result.retry_after_seconds, 1)

    def test_retry_after_tracks_time_to_reset(self):
        """Retry-after is the time left in the window."""
        self.store.consume('k', 1, 60_000, now=0)
        result = self.store.consume('k', 1, 60_000, now=15_000)
        self.assertEqual(result.retry_after_seconds, 45)

    def test_expired_window_starts_fresh(self):
        """After reset_at the key starts a fresh window."""
        for _ in range(3):
            self.store.consume('k', 3, 1_000, now=0)
        result = self.store.consume('k', 3, 1_000, now=1_000)
        self.assertTrue(result.ok)
        self.assertEqual(result.remaining, 2)
        self.assertEqual(self.store.get('k').count, 1)
        self.assertEqual(self.store.get('k').reset_at, 2_000)

    def test_keys_are_independent(self):
        """Exhausting one key leaves others untouched."""
        self.store.consume('a', 1, 60_000, now=0)
        self.assertFalse(self.store.consume('a', 1, 60_000, now=0).ok)
        self.assertTrue(self.store.consume('b', 1, 60_000, now=0).ok)

    def test_consume_moves_key_to_most_recent(self):
        """Consuming a live key moves it to the recent end."""
        for key in ('a', 'b', 'c'):
            self.store.consume(key, 10, 60_000, now=0)
        self.store.consume('a', 10, 60_000, now=0)
        self.assertEqual(list(self.store._buckets), ['b', 'c', 'a'])

    def test_expired_key_is_reinserted_at_end(self):
        """A fresh window for an expired key goes to the recent end."""
        self.store.consume('a', 10, 1_000, now=0)
        self.store.consume('b', 10, 60_000, now=0)
        self.store.consume('a', 10, 1_000, now=5_000)
        self.assertEqual(list(self.store._buckets), ['b', 'a'])


class BucketStoreBoundsTests(SimpleTestCase):
    """Tests for expiry sweep and hard cap eviction."""

    def test_sweep_runs_past_threshold(self):
        """Sweep past the threshold scans only the batch size."""
        store = BucketStore(max_entries=100, sweep_threshold=5, sweep_batch=3)
        for i in range(6):
            store.consume(f'k{i}', 10, 100, now=0)
        store.consume('fresh', 10, 100, now=200)
        # only the first 3 oldest were scanned
        self.assertEqual(len(store), 4)
        self.assertNotIn('k0', store)
        self.assertIn('k3', store)

    def test_sweep_skips_live_entries(self):
        """Sweep keeps buckets whose window is still open."""
        store = BucketStore()
        store.consume('old', 10, 100, now=0)
        store.consume('live', 10, 10_000, now=0)
        self.assertEqual(store.sweep_expired(now=500), 1)
        self.assertIn('live', store)

    def test_no_sweep_below_threshold(self):
        """Expired entries stay until the threshold is crossed."""
        store = BucketStore(max_entries=100, sweep_threshold=10, sweep_batch=10)
        for i in range(5):
            store.consume(f'k{i}', 10, 100, now=0)
        store.consume('fresh', 10, 100, now=200)
        self.assertEqual(len(store), 6)

    def test_store_never_exceeds_max_entries(self):
        """Store size stays within max_entries."""
        store = BucketStore(max_entries=100, sweep_threshold=50, sweep_batch=10)
        for i in range(1_000):
            store.consume(f'k{i}', 10, 60_000, now=0)
            self.assertLessEqual(len(store), 100)

    def test_hard_cap_evicts_oldest_tenth(self):
        """Overflow evicts the oldest 10% of entries."""
        store = BucketStore(max_entries=100, sweep_threshold=1_000)
        for i in range(101):
            store.consume(f'k{i}', 10, 60_000, now=0)
        self.assertEqual(len(store), 91)
        self.assertNotIn('k0', store)
        self.assertNotIn('k9', store)
        self.assertIn('k10', store)
        self.assertIn('k100', store)

    def test_hard_cap_can_evict_live_bucket(self):
        """Hard cap may evict a live bucket, restarting its window."""
        store = BucketStore(max_entries=10, sweep_threshold=1_000)
        store.consume('victim', 1, 60_000, now=0)
        for i in range(10):
            store.consume(f'k{i}', 1, 60_000, now=0)
        # victim's window restarts
        self.assertTrue(store.consume('victim', 1, 60_000, now=0).ok)

    def test_clear(self):
        """clear() empties the store."""
        store = BucketStore()
        store.consume('k', 1, 60_000, now=0)
        store.clear()
        self.assertEqual(len(store), 0)

    def test_invalid_max_entries(self):
        """max_entries below 1 is rejected."""
        with self.assertRaises(ValueError):
            BucketStore(max_entries=0)


class LockedBucketStoreTests(SimpleTestCase):
    """LockedBucketStore counts exactly under threads."""

    def test_concurrent_consumes_counted_exactly(self):
        """Every threaded consume is counted."""
        store = LockedBucketStore()

        def worker():
            for _ in range(200):
                store.consume('k', 10_000, 60_000, now=0)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(store.get('k').count, 1_600)

    def test_concurrent_consumes_never_overrun_limit(self):
        """Threads never get more than limit passes."""
        store = LockedBucketStore()
        allowed = []

        def worker():
            for _ in range(50):
                if store.consume('k', 25, 60_000, now=0).ok:
                    allowed.append(1)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(allowed), 25)


class BuildStoreTests(SimpleTestCase):
    """Tests for the start-up store factory."""

    def test_default_is_locked(self):
        """Default store is the locked variant."""
        self.assertIsInstance(build_store(), LockedBucketStore)

    @override_settings(
        RATE_LIMIT_STORE_THREADSAFE=False,
        RATE_LIMIT_STORE_MAX_ENTRIES=50,
        RATE_LIMIT_STORE_SWEEP_THRESHOLD=20,
        RATE_LIMIT_STORE_SWEEP_BATCH=5,
    )
    def test_settings_are_applied(self):
        """RATE_LIMIT_STORE_* settings shape the store."""
        store = build_store()
        self.assertIs(type(store), BucketStore)
        self.assertEqual(store.max_entries, 50)
        self.assertEqual(store.sweep_threshold, 20)
        self.assertEqual(store.sweep_batch, 5)

    def test_app_owns_a_store(self):
        """App start-up creates the store."""
        self.assertIsNotNone(apps.get_app_config('request_limits').store)


class CheckRateLimitTests(SimpleTestCase):
    """Tests for the dual-scope limiter."""

    def setUp(self):
        self.factory = RequestFactory()
        self.store = BucketStore()

    def _request(self, path='/api/things', ip='1.1.1.1'):
        return self.factory.get(path, HTTP_X_FORWARDED_FOR=ip)

    def test_end_to_end_window(self):
        """Three pass, the fourth is rejected, next window passes."""
        config = RateLimitConfig(limit_per_ip=3, window_ms=1_000)
        results = [
            check_rate_limit(self._request(), config, store=self.store, now=0)
            for _ in range(4)
        ]
        self.assertEqual([r.ok for r in results], [True, True, True, False])

        later = check_rate_limit(self._request(), config, store=self.store, now=1_001)
        self.assertTrue(later.ok)
        self.assertEqual(later.remaining, 2)

    def test_shared_ip_exhausts_before_user_budgets(self):
        """Shared IP bucket rejects both users before their own budgets run out."""
        config_a = RateLimitConfig(limit_per_ip=2, limit_per_user=5, user_id='alice')
        config_b = RateLimitConfig(limit_per_ip=2, limit_per_user=5, user_id='bob')

        self.assertTrue(check_rate_limit(self._request(), config_a, store=self.store, now=0).ok)
        self.assertTrue(check_rate_limit(self._request(), config_b, store=self.store, now=0).ok)

        third_a = check_rate_limit(self._request(), config_a, store=self.store, now=0)
        third_b = check_rate_limit(self._request(), config_b, store=self.store, now=0)
        self.assertFalse(third_a.ok)
        self.assertFalse(third_b.ok)
        self.assertEqual(third_a.remaining, 0)

    def test_user_budget_is_per_user(self):
        """Each user gets a separate budget."""
        config = RateLimitConfig(limit_per_ip=100, limit_per_user=2, user_id='alice')
        for _ in range(2):
            self.assertTrue(check_rate_limit(self._request(), config, store=self.store, now=0).ok)
        self.assertFalse(check_rate_limit(self._request(), config, store=self.store, now=0).ok)

        other = RateLimitConfig(limit_per_ip=100, limit_per_user=2, user_id='bob')
        self.assertTrue(check_rate_limit(self._request(), other, store=self.store, now=0).ok)

    def test_zero_user_limit_skips_user_scope(self):
        """limit_per_user=0 skips the user bucket."""
        config = RateLimitConfig(limit_per_ip=3, limit_per_user=0, user_id='alice')
        check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertIn('ip:/api/things:1.1.1.1', self.store)
        self.assertNotIn('user:/api/things:alice', self.store)

    def test_zero_ip_limit_skips_ip_scope(self):
        """limit_per_ip=0 skips the IP bucket."""
        config = RateLimitConfig(limit_per_ip=0, limit_per_user=3, user_id='alice')
        result = check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertTrue(result.ok)
        self.assertEqual(list(self.store._buckets), ['user:/api/things:alice'])

    def test_blank_user_id_is_ignored(self):
        """Blank user id skips the user bucket."""
        config = RateLimitConfig(limit_per_ip=3, limit_per_user=3, user_id='   ')
        check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertEqual(len(self.store), 1)

    def test_user_id_is_trimmed(self):
        """User id is trimmed before building the key."""
        config = RateLimitConfig(limit_per_ip=0, limit_per_user=3, user_id=' alice ')
        check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertIn('user:/api/things:alice', self.store)

    def test_no_scopes_always_passes(self):
        """With both scopes disabled every request passes."""
        config = RateLimitConfig(limit_per_ip=0, limit_per_user=0, user_id='alice')
        for _ in range(10):
            result = check_rate_limit(self._request(), config, store=self.store, now=0)
            self.assertTrue(result.ok)
        self.assertEqual(result.headers, {})
        self.assertEqual(len(self.store), 0)

    def test_path_override_shares_bucket_across_paths(self):
        """path_override groups paths into one bucket."""
        config = RateLimitConfig(limit_per_ip=1, path_override='uploads')
        self.assertTrue(check_rate_limit(self._request('/a'), config, store=self.store, now=0).ok)
        self.assertFalse(check_rate_limit(self._request('/b'), config, store=self.store, now=0).ok)

    def test_paths_are_separate_buckets(self):
        """Different paths use different buckets."""
        config = RateLimitConfig(limit_per_ip=1)
        self.assertTrue(check_rate_limit(self._request('/a'), config, store=self.store, now=0).ok)
        self.assertTrue(check_rate_limit(self._request('/b'), config, store=self.store, now=0).ok)

    def test_merge_takes_most_restrictive(self):
        """Merged limit, remaining and reset are the minimums."""
        config = RateLimitConfig(limit_per_ip=10, limit_per_user=3, user_id='alice', window_ms=60_000)
        result = check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertEqual(result.limit, 3)
        self.assertEqual(result.remaining, 2)
        self.assertEqual(result.reset_at, 60_000)

    def test_retry_after_is_slowest_scope(self):
        """Merged retry-after is the largest across scopes."""
        ip_first = RateLimitConfig(limit_per_ip=5, limit_per_user=0, window_ms=10_000)
        check_rate_limit(self._request(), ip_first, store=self.store, now=0)

        both = RateLimitConfig(limit_per_ip=5, limit_per_user=5, user_id='alice', window_ms=10_000)
        result = check_rate_limit(self._request(), both, store=self.store, now=5_000)
        # ip bucket resets at 10s, user bucket at 15s
        self.assertEqual(result.reset_at, 10_000)
        self.assertEqual(result.retry_after_seconds, 10)

    def test_rejection_reason_names_feature(self):
        """Rejection reason names the feature and the delay."""
        config = RateLimitConfig(limit_per_ip=1, feature='media upload')
        check_rate_limit(self._request(), config, store=self.store, now=0)
        result = check_rate_limit(self._request(), config, store=self.store, now=30_000)
        self.assertFalse(result.ok)
        self.assertIn('media upload', result.reason)
        self.assertIn('30 seconds', result.reason)
        self.assertEqual(result.retry_after_seconds, 30)

    def test_default_feature_in_reason(self):
        """Reason falls back to 'this endpoint'."""
        config = RateLimitConfig(limit_per_ip=1)
        check_rate_limit(self._request(), config, store=self.store, now=0)
        result = check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertIn('this endpoint', result.reason)

    def test_success_has_no_reason(self):
        """Allowed results carry no reason."""
        result = check_rate_limit(self._request(), RateLimitConfig(), store=self.store, now=0)
        self.assertIsNone(result.reason)

    @override_settings(RATE_LIMIT_PER_IP=2, RATE_LIMIT_PER_USER=1, RATE_LIMIT_WINDOW_MS=5_000)
    def test_defaults_come_from_settings(self):
        """Unset config values come from RATE_LIMIT_* settings."""
        result = check_rate_limit(
            self._request(), RateLimitConfig(user_id='alice'), store=self.store, now=0
        )
        self.assertEqual(result.limit, 1)
        self.assertEqual(result.reset_at, 5_000)

    def test_builtin_defaults(self):
        """Without settings the built-in defaults apply."""
        with self.settings():
            for name in ('RATE_LIMIT_PER_IP', 'RATE_LIMIT_PER_USER', 'RATE_LIMIT_WINDOW_MS'):
                if hasattr(settings, name):
                    delattr(settings, name)
            result = check_rate_limit(self._request(), None, store=self.store, now=0)
        self.assertEqual(result.limit, 60)
        self.assertEqual(result.reset_at, 60_000)

    def test_rejection_is_logged(self):
        """Rejections are logged with the bucket key."""
        config = RateLimitConfig(limit_per_ip=1)
        check_rate_limit(self._request(), config, store=self.store, now=0)
        with self.assertLogs('request_limits.rate_limiter', level='WARNING') as logs:
            check_rate_limit(self._request(), config, store=self.store, now=0)
        self.assertIn('ip:/api/things:1.1.1.1', logs.output[0])

    def test_uses_app_store_by_default(self):
        """Without a store argument the app store is used."""
        app_store = BucketStore()
        with patch.object(apps.get_app_config('request_limits'), 'store', app_store):
            check_rate_limit(self._request(), RateLimitConfig(limit_per_ip=5))
        self.assertEqual(len(app_store), 1)


class HeaderTests(SimpleTestCase):
    """Tests for rate limit headers and the 429 builder."""

    def _result(self, **kwargs):
        values = dict(
            ok=True, limit=10, remaining=4, reset_at=1_700_000_000_500,
            retry_after_seconds=30, reason=None,
        )
        values.update(kwargs)
        return RateLimitResult(**values)

    def test_success_headers(self):
        """Allowed result gives limit, remaining and reset headers."""
        headers = get_rate_limit_headers(self._result())
        self.assertEqual(headers, {
            'X-RateLimit-Limit': '10',
            'X-RateLimit-Remaining': '4',
            'X-RateLimit-Reset': '1700000001',
        })

    def test_rejection_adds_retry_after(self):
        """Rejected result adds Retry-After."""
        headers = get_rate_limit_headers(self._result(ok=False, remaining=0))
        self.assertEqual(headers['Retry-After'], '30')

    def test_remaining_floored_at_zero(self):
        """Remaining header never goes negative."""
        headers = get_rate_limit_headers(self._result(remaining=-3))
        self.assertEqual(headers['X-RateLimit-Remaining'], '0')

    def test_build_rate_limit_response(self):
        """429 response carries the body and headers."""
        result = self._result(ok=False, remaining=0, reason='Too many requests for uploads.')
        result.headers = get_rate_limit_headers(result)
        resp = build_rate_limit_response(result)

        self.assertEqual(resp.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(resp.data, {
            'error': 'Too many requests',
            'message': 'Too many requests for uploads.',
            'retryAfterSeconds': 30,
        })
        self.assertEqual(resp['Retry-After'], '30')
        self.assertEqual(resp['X-RateLimit-Remaining'], '0')

    def test_build_response_without_precomputed_headers(self):
        """Headers are built when the result has none."""
        resp = build_rate_limit_response(self._result(ok=False, remaining=0))
        self.assertEqual(resp['Retry-After'], '30')


class ExceptionHandlerTests(SimpleTestCase):
    """Tests for custom_exception_handler."""

    def test_rate_limit_exceeded_becomes_429(self):
        """RateLimitExceeded is turned into the 429 response."""
        result = RateLimitResult(
            ok=False, limit=1, remaining=0, reset_at=60_000,
            retry_after_seconds=60, reason='slow down',
        )
        resp = custom_exception_handler(RateLimitExceeded(result), {})
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.data['message'], 'slow down')
        self.assertEqual(resp['Retry-After'], '60')

    def test_unhandled_error_is_500(self):
        """Unhandled errors are logged and return 500."""
        with self.assertLogs('request_limits.exception_handlers', level='ERROR'):
            resp = custom_exception_handler(ValueError('boom'), {})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.data, {'error': 'Internal server error'})


class _StubUser:
    is_authenticated = True

    def __init__(self, pk):
        self.pk = pk


class _WidgetView(RateLimitedAPIView):
    rate_limit_feature = 'widgets'
    rate_limit_per_ip = 100
    rate_limit_per_user = 2

    def get(self, request):
        return Response({'ok': True})


class RateLimitedAPIViewTests(SimpleTestCase):
    """Tests for the RateLimitedAPIView base class."""

    def setUp(self):
        self.factory = APIRequestFactory()
        self.store = BucketStore()
        patcher = patch.object(apps.get_app_config('request_limits'), 'store', self.store)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _get(self, user=None):
        request = self.factory.get('/widgets', HTTP_X_FORWARDED_FOR='2.2.2.2')
        if user is not None:
            force_authenticate(request, user=user)
        return _WidgetView.as_view()(request)

    def test_success_carries_headers(self):
        """Allowed responses carry the informational headers."""
        resp = self._get(_StubUser(7))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp['X-RateLimit-Limit'], '2')
        self.assertEqual(resp['X-RateLimit-Remaining'], '1')
        self.assertNotIn('Retry-After', resp)

    def test_authenticated_user_gets_user_bucket(self):
        """Authenticated requests are counted against the user's pk."""
        self._get(_StubUser(7))
        self.assertIn('user:/widgets:7', self.store)

    def test_rejected_after_user_budget(self):
        """Request past the user budget gets the 429 body."""
        user = _StubUser(7)
        self._get(user)
        self._get(user)
        resp = self._get(user)
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.data['error'], 'Too many requests')
        self.assertIn('widgets', resp.data['message'])
        self.assertIn('Retry-After', resp)

    @override_settings(REST_FRAMEWORK={
        'EXCEPTION_HANDLER': 'rest_framework.views.exception_handler',
        'DEFAULT_AUTHENTICATION_CLASSES': [],
        'DEFAULT_PERMISSION_CLASSES': [],
    })
    def test_rejection_shape_without_custom_handler(self):
        """429 body and headers don't depend on the project's exception handler."""
        user = _StubUser(7)
        self._get(user)
        self._get(user)
        resp = self._get(user)
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.data['error'], 'Too many requests')
        self.assertIn('retryAfterSeconds', resp.data)
        self.assertNotIn('detail', resp.data)
        self.assertIn('Retry-After', resp)
        self.assertEqual(resp['X-RateLimit-Remaining'], '0')

    def test_anonymous_uses_ip_only(self):
        """Anonymous requests only use the IP bucket."""
        for _ in range(3):
            resp = self._get()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp['X-RateLimit-Limit'], '100')
        self.assertEqual(len(self.store), 1)


class HealthCheckViewTests(APISimpleTestCase):
    """Tests for GET /api/health endpoint."""

    def test_health_check_returns_ok(self):
        """Health check returns ok status."""
        response = self.client.get('/api/health')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'ok')
        self.assertNotIn('X-RateLimit-Limit', response)


class TelemetryErrorViewTests(APISimpleTestCase):
    """Tests for POST /api/telemetry/error endpoint."""

    url = '/api/telemetry/error'

    def setUp(self):
        self.store = LockedBucketStore()
        patcher = patch.object(apps.get_app_config('request_limits'), 'store', self.store)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, payload=None, ip='3.3.3.3'):
        body = {'message': 'TypeError: x is undefined', 'env': 'production'}
        if payload:
            body.update(payload)
        return self.client.post(self.url, body, format='json', HTTP_X_FORWARDED_FOR=ip)

    def test_accepts_error(self):
        """Valid report returns success with its fingerprint."""
        response = self._post()
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIs(response.data['success'], True)
        self.assertRegex(response.data['fingerprint'], r'^[0-9a-f]{16}$')
        self.assertEqual(response['X-RateLimit-Limit'], '30')
        self.assertEqual(response['X-RateLimit-Remaining'], '29')

    def test_fingerprint_matches_helper(self):
        """Returned fingerprint is the one generate_fingerprint computes."""
        response = self._post({'name': 'TypeError', 'route': '/dashboard'})
        expected = generate_fingerprint({
            'name': 'TypeError',
            'message': 'TypeError: x is undefined',
            'route': '/dashboard',
        })
        self.assertEqual(response.data['fingerprint'], expected.fingerprint)

    def test_high_severity_logged_as_error(self):
        """High and critical reports are logged at ERROR."""
        with self.assertLogs('request_limits.views', level='ERROR'):
            self._post({'severity': 'critical'})

    def test_other_severities_logged_as_info(self):
        """Low and medium reports are logged at INFO."""
        with self.assertLogs('request_limits.views', level='INFO') as logs:
            self._post({'severity': 'low'})
        self.assertTrue(logs.output[0].startswith('INFO:'))

    def test_invalid_payload(self):
        """Missing message returns 400 and still carries rate limit headers."""
        response = self.client.post(self.url, {'env': 'production'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('message', response.data)
        self.assertIn('X-RateLimit-Limit', response)

    def test_blank_message_rejected(self):
        """Whitespace-only message returns 400."""
        response = self._post({'message': '   '})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_development_errors_dropped_in_production(self):
        """Development reports are accepted with 204 on a production server."""
        response = self._post({'env': 'development'})
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(response['X-RateLimit-Limit'], '30')

    def test_ip_limit(self):
        """31st report from one IP within a minute gets 429."""
        for _ in range(30):
            self.assertEqual(self._post().status_code, status.HTTP_200_OK)

        response = self._post()
        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(response.data['error'], 'Too many requests')
        self.assertIn('error telemetry', response.data['message'])
        self.assertGreaterEqual(response.data['retryAfterSeconds'], 1)
        self.assertIn('Retry-After', response)

        # another client is unaffected
        self.assertEqual(self._post(ip='4.4.4.4').status_code, status.HTTP_200_OK)

    def test_session_limit(self):
        """21st report for one session within a minute gets 429."""
        for _ in range(20):
            response = self._post({'session_id': 's-1'})
            self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self._post({'session_id': 's-1'})
        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertIn('error telemetry (user)', response.data['message'])
        self.assertEqual(response['X-RateLimit-Limit'], '20')

        # different session from the same IP still has budget
        self.assertEqual(self._post({'session_id': 's-2'}).status_code, status.HTTP_200_OK)

    def test_user_id_preferred_over_session(self):
        """user_id, when present, keys the per-user budget."""
        self._post({'user_id': 'u-1', 'session_id': 's-1'})
        self.assertIn('user:/api/telemetry/error/user/u-1:u-1', self.store)
        self.assertNotIn('user:/api/telemetry/error/user/s-1:s-1', self.store)


class NormalizeErrorMessageTests(SimpleTestCase):
    """Tests for normalize_error_message."""

    def test_uuids_masked(self):
        """UUIDs are replaced, even without word boundaries."""
        self.assertEqual(
            normalize_error_message('Org 550e8400-e29b-41d4-a716-446655440000 user 123e4567-e89b-12d3-a456-426614174000'),
            'Org <UUID> user <UUID>',
        )
        self.assertEqual(
            normalize_error_message('a]550e8400-e29b-41d4-a716-446655440000[b'),
            'a]<UUID>[b',
        )

    def test_long_numbers_masked(self):
        """Numbers of 5+ digits are replaced."""
        self.assertEqual(normalize_error_message('Record 12345 not found'), 'Record <ID> not found')
        self.assertEqual(normalize_error_message('ID: 9876543210'), 'ID: <ID>')

    def test_short_numbers_kept(self):
        """Numbers under 5 digits are kept."""
        self.assertEqual(normalize_error_message('Error code 404'), 'Error code 404')
        self.assertEqual(normalize_error_message('Step 1234 failed'), 'Step 1234 failed')

    def test_long_hex_masked(self):
        """Hex strings of 32+ chars are replaced."""
        self.assertEqual(
            normalize_error_message('Hash: a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4'),
            'Hash: <HEX>',
        )
        self.assertEqual(normalize_error_message('Token ' + '0123456789abcdef' * 4), 'Token <HEX>')

    def test_timestamps_masked(self):
        """ISO timestamps with any offset form are replaced."""
        for stamp in (
            '2024-01-15T10:30:00Z',
            '2024-01-15T10:30:00.123Z',
            '2024-01-15T10:30:00+05:30',
            '2024-01-15T10:30:00-0800',
        ):
            self.assertEqual(normalize_error_message(f'Failed at {stamp}'), 'Failed at <TIMESTAMP>')

    def test_whitespace_collapsed_and_trimmed(self):
        """Runs of whitespace collapse to one space and ends are trimmed."""
        self.assertEqual(normalize_error_message('Line\n\nbreaks\tand\ttabs'), 'Line breaks and tabs')
        self.assertEqual(normalize_error_message('  padded message  '), 'padded message')

    def test_combined_patterns(self):
        """All masks apply together."""
        self.assertEqual(
            normalize_error_message(
                'User 550e8400-e29b-41d4-a716-446655440000 failed at 2024-01-15T10:30:00Z with code 99999'
            ),
            'User <UUID> failed at <TIMESTAMP> with code <ID>',
        )

    def test_empty(self):
        """Empty message stays empty."""
        self.assertEqual(normalize_error_message(''), '')


class ExtractTopStackFrameTests(SimpleTestCase):
    """Tests for extract_top_stack_frame."""

    def test_missing_stack(self):
        """No stack gives no frame."""
        self.assertIsNone(extract_top_stack_frame(None))
        self.assertIsNone(extract_top_stack_frame(''))

    def test_vendor_frames_skipped(self):
        """node_modules, node:internal and anonymous frames are skipped."""
        stack = (
            "Error: Something failed\n"
            "    at Object.handler (/app/node_modules/express/lib/router.js:123:15)\n"
            "    at Module._compile (node:internal/modules/cjs/loader:1241:14)\n"
            "    at <anonymous>\n"
            "    at processRequest (/app/src/lib/api/handler.ts:45:10)"
        )
        self.assertEqual(extract_top_stack_frame(stack), '/src/lib/api/handler.ts')

    def test_path_normalized_to_src(self):
        """Paths are cut back to /src/ when present."""
        stack = "Error: x\n    at handler (/Users/dev/projects/app/src/lib/handler.ts:10:5)"
        self.assertEqual(extract_top_stack_frame(stack), '/src/lib/handler.ts')

    def test_path_without_src_kept(self):
        """Paths without /src/ are returned whole."""
        stack = "Error: x\n    at handler (/app/lib/handler.ts:10:5)"
        self.assertEqual(extract_top_stack_frame(stack), '/app/lib/handler.ts')

    def test_first_valid_frame_wins(self):
        """The topmost application frame is used."""
        stack = (
            "Error: x\n"
            "    at firstValid (/app/src/lib/first.ts:10:5)\n"
            "    at secondValid (/app/src/lib/second.ts:20:10)"
        )
        self.assertEqual(extract_top_stack_frame(stack), '/src/lib/first.ts')

    def test_only_vendor_frames(self):
        """Stack with only vendor frames gives no frame."""
        stack = (
            "Error: x\n"
            "    at Object.handler (/app/node_modules/pkg/index.js:10:5)\n"
            "    at Module._compile (node:internal/modules/cjs/loader:1241:14)"
        )
        self.assertIsNone(extract_top_stack_frame(stack))


class GenerateFingerprintTests(SimpleTestCase):
    """Tests for generate_fingerprint."""

    def test_same_error_same_fingerprint(self):
        """Identical events give identical 16-char hex fingerprints."""
        event = {'name': 'TypeError', 'message': "Cannot read property 'foo' of undefined", 'route': '/api/users'}
        first = generate_fingerprint(event)
        self.assertEqual(first.fingerprint, generate_fingerprint(event).fingerprint)
        self.assertRegex(first.fingerprint, r'^[0-9a-f]{16}$')

    def test_dynamic_values_grouped(self):
        """Events differing only in ids share a fingerprint."""
        a = generate_fingerprint({'name': 'NotFoundError', 'message': 'User 550e8400-e29b-41d4-a716-446655440000 not found'})
        b = generate_fingerprint({'name': 'NotFoundError', 'message': 'User 123e4567-e89b-12d3-a456-426614174000 not found'})
        self.assertEqual(a.fingerprint, b.fingerprint)
        self.assertEqual(a.normalized_message, 'User <UUID> not found')

    def test_status_codes_distinguish(self):
        """Short numbers such as status codes keep errors apart."""
        a = generate_fingerprint({'message': 'Error code 404', 'route': '/x'})
        b = generate_fingerprint({'message': 'Error code 500', 'route': '/x'})
        self.assertNotEqual(a.fingerprint, b.fingerprint)

    def test_stack_frame_distinguishes(self):
        """Same message from different call sites gets different fingerprints."""
        a = generate_fingerprint({'message': 'boom', 'route': '/x', 'stack': 'Error: boom\n    at foo (/app/src/a.ts:1:1)'})
        b = generate_fingerprint({'message': 'boom', 'route': '/x', 'stack': 'Error: boom\n    at bar (/app/src/b.ts:9:9)'})
        self.assertNotEqual(a.fingerprint, b.fingerprint)
        self.assertEqual(a.top_frame, '/src/a.ts')
        self.assertEqual(b.top_frame, '/src/b.ts')

    def test_route_distinguishes(self):
        """Route is part of the fingerprint."""
        a = generate_fingerprint({'message': 'boom', 'route': '/a'})
        b = generate_fingerprint({'message': 'boom', 'route': '/b'})
        self.assertNotEqual(a.fingerprint, b.fingerprint)

    def test_long_title_truncated(self):
        """Titles are cut to 80 chars ending in '...'."""
        result = generate_fingerprint({'name': 'ValidationError', 'message': 'X' * 100})
        self.assertEqual(len(result.title), 80)
        self.assertTrue(result.title.endswith('...'))

    def test_name_defaults_to_error(self):
        """Missing name defaults to Error in the title."""
        result = generate_fingerprint({'message': 'Short message'})
        self.assertEqual(result.title, 'Error: Short message')
        self.assertIsNone(result.top_frame)
