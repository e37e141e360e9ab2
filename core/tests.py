"""
Tests for the shared error taxonomy and API rate limiting.
"""
from unittest.mock import patch

import redis
from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import AlreadyClaimed, CapacityExceeded, IllegalTransition, InsufficientStock


class FakeRedis:
    """In-memory stand-in for the few counter commands the limiter uses."""

    def __init__(self):
        self.counts = {}

    def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key, seconds):
        return True

    def ttl(self, key):
        return 42


class BrokenRedis(FakeRedis):
    def incr(self, key):
        raise redis.ConnectionError('connection reset')


class ErrorPayloadTestCase(SimpleTestCase):

    def test_insufficient_stock_payload(self):
        payload = InsufficientStock(7, requested=10, available=5, bin_code='A-01').to_dict()

        self.assertEqual(payload['error'], 'InsufficientStock')
        self.assertEqual(payload['available'], 5)
        self.assertEqual(payload['bin_code'], 'A-01')

    def test_capacity_exceeded_is_a_validation_error(self):
        exc = CapacityExceeded('A-01', capacity=100, current=90, requested=20)

        self.assertEqual(exc.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(exc.to_dict()['field'], 'quantity')

    def test_conflict_statuses(self):
        self.assertEqual(IllegalTransition('delivered', 'cancelled').status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(AlreadyClaimed('ORD1', 'picker').status_code, status.HTTP_409_CONFLICT)


@override_settings(RATE_LIMIT_ENABLED=True, RATE_LIMIT={'MAX_REQUESTS': 2, 'WINDOW_SECONDS': 60})
class RateLimitTestCase(APITestCase):
    """Test cases for the Redis rate limiter on write endpoints."""

    def setUp(self):
        User = get_user_model()
        self.user = User.objects.create_user(username='support', password='pw')
        self.other = User.objects.create_user(username='support2', password='pw')
        self.client.force_authenticate(self.user)

    def cancel(self):
        return self.client.post('/api/orders/999999/cancel/', {'reason': 'test'}, format='json')

    def test_requests_over_limit_rejected(self):
        """
        Test: The third request in a window of two is rejected.

        Given: A limit of 2 requests per window
        When: The same user sends three requests
        Then: Two reach the view (404 here), the third gets 429 with Retry-After
        """
        with patch('core.rate_limiting.get_redis_client', return_value=FakeRedis()):
            first = self.cancel()
            second = self.cancel()
            third = self.cancel()

        self.assertEqual(first.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(first['X-RateLimit-Remaining'], '1')
        self.assertEqual(second.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(third.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(third['Retry-After'], '42')
        self.assertEqual(third.data['error'], 'RateLimitExceeded')

    def test_limits_are_per_user(self):
        fake = FakeRedis()
        with patch('core.rate_limiting.get_redis_client', return_value=fake):
            for _ in range(3):
                self.cancel()
            self.client.force_authenticate(self.other)
            response = self.cancel()

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_redis_errors_fail_open(self):
        with patch('core.rate_limiting.get_redis_client', return_value=BrokenRedis()):
            responses = [self.cancel() for _ in range(3)]

        self.assertEqual([r.status_code for r in responses], [status.HTTP_404_NOT_FOUND] * 3)

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled_limiter_skips_redis(self):
        with patch('core.rate_limiting.get_redis_client') as get_client:
            self.cancel()

        get_client.assert_not_called()
