from unittest.mock import patch

from django.test import TestCase, override_settings
from rest_framework.test import APIRequestFactory

from services.dispatch import reset_dispatch_coordinator

from .views import health_check


class HealthCheckTests(TestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        reset_dispatch_coordinator()

    def tearDown(self):
        reset_dispatch_coordinator()

    @override_settings(REDIS_URL=None)
    def test_healthy_without_redis(self):
        response = health_check(self.factory.get('/health/'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'healthy')
        self.assertNotIn('redis', response.data['services'])
        self.assertEqual(response.data['services']['database'], 'healthy')
        self.assertEqual(response.data['dispatch'], {
            'connections': 0,
            'online_drivers': 0,
            'open_bookings': 0,
            'active_trips': 0,
        })

    @override_settings(REDIS_URL='redis://127.0.0.1:6399/0')
    def test_unreachable_redis_reports_unhealthy(self):
        with patch('dispatch_backend.views.redis.Redis.from_url') as from_url:
            from_url.return_value.ping.side_effect = ConnectionError('refused')
            response = health_check(self.factory.get('/health/'))

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data['status'], 'unhealthy')
        self.assertTrue(response.data['services']['redis'].startswith('unhealthy'))

    @override_settings(REDIS_URL=None)
    def test_unregistered_persistence_task_reports_unhealthy(self):
        with patch('dispatch_backend.views.celery_app') as app:
            app.tasks = {}
            response = health_check(self.factory.get('/health/'))

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data['services']['celery'], 'unhealthy: task not registered')

    @override_settings(REDIS_URL=None)
    def test_registered_persistence_task_reports_healthy(self):
        response = health_check(self.factory.get('/health/'))

        self.assertEqual(response.data['services']['celery'], 'healthy')
