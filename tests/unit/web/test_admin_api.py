#!/usr/bin/env python3
"""
Unit tests for the admin API routes.

The app is bound to a real AppContext built from default config with the
in-process quota store, so no Redis or SMTP is needed.
"""

import unittest

from fastapi.testclient import TestClient

from core.app_context import AppContext
from core.config_loader import AppConfig
from notifier.exceptions import SinkTransportError
from notifier.quota_store import InMemoryQuotaStore
from web.backend.app import create_app


class AdminApiTestCase(unittest.TestCase):

    def setUp(self):
        self.context = AppContext.build(AppConfig(), quota_store=InMemoryQuotaStore())
        self.client = TestClient(create_app(self.context))

    def tearDown(self):
        self.context.close()

    def trip(self, sink_name):
        breaker = self.context.breakers.get(sink_name)
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure(SinkTransportError(sink_name, "connection refused"))


class TestHealthEndpoints(AdminApiTestCase):

    def test_liveness(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy", "service": "notifier-admin"})

    def test_notification_health(self):
        response = self.client.get("/api/health/notifications")
        self.assertEqual(response.status_code, 200)

        data = response.json()
        self.assertTrue(data['success'])
        self.assertEqual(data['status'], 'healthy')
        self.assertTrue(data['rate_limiter']['store_available'])
        self.assertEqual(data['open_circuits'], [])
        self.assertEqual(data['dedup'], {'active_groups': 0, 'pending_digests': 0})

    def test_open_circuit_degrades_health(self):
        self.trip("email")

        data = self.client.get("/api/health/notifications").json()
        self.assertEqual(data['status'], 'degraded')
        self.assertEqual(data['open_circuits'], ['email'])
        self.assertEqual(data['circuit_breakers']['email']['state'], 'open')


class TestRateLimitEndpoints(AdminApiTestCase):

    def test_status_of_fresh_window(self):
        response = self.client.get("/api/rate-limits/user1/notification_send")
        self.assertEqual(response.status_code, 200)

        data = response.json()
        self.assertEqual(data['limit'], 100)
        self.assertEqual(data['remaining'], 100)
        self.assertTrue(data['allowed'])
        self.assertIsNone(data['reset_at'])

    def test_status_reflects_consumption_without_consuming(self):
        for _ in range(3):
            self.context.rate_limiter.allow("user1", "bulk_notification")

        for _ in range(2):
            data = self.client.get("/api/rate-limits/user1/bulk_notification").json()
        self.assertEqual(data['remaining'], 2)
        self.assertIsNotNone(data['reset_at'])

    def test_role_scales_limit(self):
        data = self.client.get("/api/rate-limits/boss/notification_send", params={"role": "admin"}).json()
        self.assertEqual(data['role'], 'admin')
        self.assertEqual(data['limit'], 500)

    def test_unknown_operation_is_404(self):
        response = self.client.get("/api/rate-limits/user1/carrier_pigeon")
        self.assertEqual(response.status_code, 404)

        data = response.json()
        self.assertFalse(data['success'])
        self.assertEqual(data['type'], 'UnknownOperationError')

    def test_reset_clears_window(self):
        for _ in range(5):
            self.context.rate_limiter.allow("user1", "bulk_notification")
        self.assertFalse(self.context.rate_limiter.allow("user1", "bulk_notification").allowed)

        response = self.client.delete("/api/rate-limits/user1/bulk_notification")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['cleared'])

        self.assertTrue(self.context.rate_limiter.allow("user1", "bulk_notification").allowed)

    def test_reset_of_empty_window(self):
        response = self.client.delete("/api/rate-limits/nobody/bulk_notification")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['cleared'])


class TestCircuitEndpoints(AdminApiTestCase):

    def test_configured_sinks_listed_before_any_delivery(self):
        data = self.client.get("/api/circuits").json()
        self.assertEqual(set(data['circuits']), {"in_app", "websocket", "email", "push", "chat"})
        self.assertEqual(data['open_circuits'], [])

    def test_reset_before_any_delivery(self):
        response = self.client.post("/api/circuits/email/reset")
        self.assertEqual(response.status_code, 200)

    def test_list_shows_open_circuits(self):
        self.trip("push")

        data = self.client.get("/api/circuits").json()
        self.assertEqual(data['circuits']['push']['state'], "open")
        self.assertEqual(data['open_circuits'], ["push"])

    def test_get_circuit(self):
        self.trip("email")

        response = self.client.get("/api/circuits/email")
        self.assertEqual(response.status_code, 200)

        circuit = response.json()['circuit']
        self.assertEqual(circuit['name'], 'email')
        self.assertEqual(circuit['state'], 'open')
        self.assertEqual(circuit['consecutive_failures'], 5)
        self.assertIsNotNone(circuit['next_retry_at'])
        self.assertIn("connection refused", circuit['last_error'])

    def test_unknown_circuit_is_404(self):
        response = self.client.get("/api/circuits/pigeon")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['type'], 'CircuitNotFoundException')

    def test_reset_circuit(self):
        self.trip("email")

        response = self.client.post("/api/circuits/email/reset")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['success'])
        self.assertEqual(self.context.breakers.status("email")['state'], 'closed')

    def test_reset_unknown_circuit_is_404(self):
        response = self.client.post("/api/circuits/pigeon/reset")
        self.assertEqual(response.status_code, 404)


if __name__ == '__main__':
    unittest.main()
