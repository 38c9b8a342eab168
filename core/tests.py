import json
import logging

from django.contrib.auth import get_user_model
from django.db import IntegrityError
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from common.logging import JsonFormatter
from core.models import AuditLog


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="receiver",
            email="Receiver@Example.com",
            password="pass1234",
            role="warehouse",
        )

    def test_token_carries_role(self):
        response = self.client.post("/api/v1/token/", {"username": "receiver", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "warehouse")
        self.assertFalse(token["is_superuser"])

    def test_token_accepts_email_login(self):
        response = self.client.post("/api/v1/token/", {"username": "receiver@example.com", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertIn("refresh", response.json())

    def test_bad_credentials_use_error_envelope(self):
        response = self.client.post("/api/v1/token/", {"username": "receiver", "password": "wrong"}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(sorted(response.json().keys()), ["code", "errors", "message", "status"])

    def test_email_is_normalized_and_unique_ignoring_case(self):
        self.assertEqual(self.user.email, "receiver@example.com")

        with self.assertRaises(IntegrityError):
            get_user_model().objects.create_user(username="other", email="RECEIVER@example.com", password="pass1234")

    def test_unauthenticated_requests_are_rejected(self):
        response = self.client.get("/api/v1/purchase-orders/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.manager = user_model.objects.create_user(username="audit-manager", password="pass1234", role="manager")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_entity(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="payment.create", entity="payment", actor=self.admin)
        AuditLog.objects.create(action="purchase_order.approve", entity="purchase_order", actor=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity": "payment"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["action"] for row in response.json()["results"]], ["payment.create"])

    def test_manager_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.manager)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))


class RequestLoggingTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="logger", password="pass1234", role="staff")

    def test_request_id_is_echoed_and_logged(self):
        self.client.force_authenticate(user=self.user)

        with self.assertLogs("api.request", level="INFO") as cm:
            response = self.client.get("/api/v1/orders/", HTTP_X_REQUEST_ID="req-123")

        self.assertEqual(response["X-Request-ID"], "req-123")
        self.assertEqual(cm.records[0].request_id, "req-123")

    def test_json_formatter_includes_domain_fields(self):
        record = logging.LogRecord("procurement.receiving", logging.INFO, __file__, 1, "line_received", None, None)
        record.line_id = "abc"
        record.quantity = 5

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "line_received")
        self.assertEqual(payload["line_id"], "abc")
        self.assertEqual(payload["quantity"], 5)
