from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase
from rest_framework.test import APIClient

from common.audit import create_audit_log
from common.permissions import get_user_role, user_has_capability
from core.models import AuditLog


class AuthenticationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(
            username="manager-auth",
            email="Manager@Example.com",
            password="pass1234",
            role="manager",
        )

    def test_token_obtain_accepts_email_case_insensitively(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "manager@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_token_obtain_with_bad_password_uses_error_envelope(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "manager-auth", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "authentication_failed")
        self.assertEqual(payload["status"], 401)

    def test_me_returns_role(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "manager")
        self.assertEqual(response.json()["username"], "manager-auth")

    def test_me_requires_authentication(self):
        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")

    def test_email_uniqueness_ignores_case(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            self.user_model.objects.create_user(
                username="manager-dupe",
                email="MANAGER@example.com",
                password="pass1234",
            )


class RolePermissionTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.staff = self.user_model.objects.create_user(username="staff-perm", password="pass1234", role="staff")
        self.manager = self.user_model.objects.create_user(username="manager-perm", password="pass1234", role="manager")
        self.superuser = self.user_model.objects.create_superuser(username="root-perm", password="pass1234")

    def test_capability_matrix(self):
        self.assertTrue(user_has_capability(self.staff, "document.edit"))
        self.assertFalse(user_has_capability(self.staff, "document.validate"))
        self.assertTrue(user_has_capability(self.manager, "document.validate"))
        self.assertTrue(user_has_capability(self.manager, "document.cancel"))
        self.assertFalse(user_has_capability(self.manager, "admin.records.manage"))
        self.assertFalse(user_has_capability(self.manager, "unknown.capability"))

    def test_superuser_acts_as_admin(self):
        self.assertEqual(get_user_role(self.superuser), "admin")
        self.assertTrue(user_has_capability(self.superuser, "admin.records.manage"))


class AuditLogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="admin-audit", password="pass1234", role="admin")
        self.staff = self.user_model.objects.create_user(username="staff-audit", password="pass1234", role="staff")
        self.log = create_audit_log(
            actor=self.admin,
            action="warehouse.create",
            entity="warehouse",
            after_snapshot={"code": "MAIN"},
            request_id="req-1",
        )
        create_audit_log(actor=self.staff, action="document.create", entity="document")

    def test_staff_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_filters_audit_logs_by_action(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/", {"action": "warehouse.create"})

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([item["id"] for item in results], [str(self.log.id)])
        self.assertEqual(results[0]["actor_username"], "admin-audit")
        self.assertEqual(results[0]["after_snapshot"], {"code": "MAIN"})

    def test_admin_exports_audit_logs_as_csv(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        lines = response.content.decode().strip().splitlines()
        self.assertEqual(lines[0], "id,created_at,actor,action,entity,entity_id,request_id")
        self.assertEqual(len(lines), 3)
        self.assertEqual(AuditLog.objects.count(), 2)


class HealthCheckTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    def test_healthz_is_public_and_echoes_request_id(self):
        response = self.client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="abc-123")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertEqual(response.json()["request_id"], "abc-123")
        self.assertEqual(response["X-Request-ID"], "abc-123")

    def test_readyz_checks_database(self):
        response = self.client.get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")
