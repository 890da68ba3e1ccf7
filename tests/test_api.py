import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from rbt_dashboard.auth.security import create_refresh_token
from rbt_dashboard.config import settings
from rbt_dashboard.models.models import EmailVerification, Robot, RobotLog, RobotHistory, User

from tests.support import ApiTestCase, PASSWORD


class AuthApiTests(ApiTestCase):
    def test_signup_verify_login_flow(self):
        r = self.client.post("/auth/signup", json={"email": "New.Operator@BrightBots.in", "password": PASSWORD})
        self.assertEqual(r.status_code, 201, r.text)
        self.assertFalse(r.json()["email_verified"])

        r = self.client.post("/auth/login", json={"email": "new.operator@brightbots.in", "password": PASSWORD})
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.json()["detail"], "Please verify your email before logging in.")

        token = self.db.query(EmailVerification).one().token
        r = self.client.post("/auth/verify-email", json={"token": token})
        self.assertEqual(r.status_code, 200, r.text)
        r = self.client.post("/auth/verify-email", json={"token": token})
        self.assertEqual(r.status_code, 400)

        r = self.client.post("/auth/login", json={"email": "new.operator@brightbots.in", "password": PASSWORD})
        self.assertEqual(r.status_code, 200, r.text)
        access = r.json()["access_token"]

        me = self.client.get("/auth/me", headers={"Authorization": f"Bearer {access}"})
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["email"], "new.operator@brightbots.in")
        self.assertEqual(me.json()["role"], "viewer")
        self.assertEqual(me.json()["capabilities"], ["read"])

    def test_duplicate_signup(self):
        self.make_user("ops@brightbots.in")
        r = self.client.post("/auth/signup", json={"email": "ops@brightbots.in", "password": PASSWORD})
        self.assertEqual(r.status_code, 400)

    def test_bad_credentials(self):
        self.make_user("ops@brightbots.in")
        r = self.client.post("/auth/login", json={"email": "ops@brightbots.in", "password": "wrong-password"})
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.json()["detail"], "Invalid email or password.")
        r = self.client.post("/auth/login", json={"email": "nobody@brightbots.in", "password": PASSWORD})
        self.assertEqual(r.status_code, 401)

    def test_login_is_rate_limited(self):
        self.make_user("ops@brightbots.in")
        codes = [
            self.client.post("/auth/login", json={"email": "ops@brightbots.in", "password": "nope-nope"}).status_code
            for _ in range(12)
        ]
        self.assertEqual(codes[0], 401)
        self.assertEqual(codes[-1], 429)
        r = self.client.post("/auth/login", json={"email": "ops@brightbots.in", "password": PASSWORD})
        self.assertEqual(r.json()["detail"], "Too many attempts. Please try again later.")

    def test_super_admin_is_promoted_on_login(self):
        user = self.make_user(settings.super_admin_email, role="viewer")
        r = self.client.post("/auth/login", json={"email": settings.super_admin_email, "password": PASSWORD})
        self.assertEqual(r.status_code, 200, r.text)
        self.db.refresh(user)
        self.assertEqual(user.role, "super_admin")
        self.assertIsNotNone(user.last_login_at)

    def test_bootstrap_domain_only_applies_at_signup(self):
        with mock.patch.object(settings, "admin_bootstrap_domain", "brightbots.in"):
            self.client.post("/auth/signup", json={"email": "lead@brightbots.in", "password": PASSWORD})
            self.assertEqual(self.db.query(User).filter(User.email == "lead@brightbots.in").one().role, "admin")

            existing = self.make_user("tech@brightbots.in", role="viewer")
            self.client.post("/auth/login", json={"email": "tech@brightbots.in", "password": PASSWORD})
            self.db.refresh(existing)
            self.assertEqual(existing.role, "viewer")

    def test_role_comes_from_the_stored_record(self):
        user = self.make_user("ops@brightbots.in", role="viewer")
        headers = self.auth_headers(user)
        user.role = "admin"
        self.db.commit()
        r = self.client.get("/auth/me", headers=headers)
        self.assertEqual(r.json()["role"], "admin")

    def test_refresh_and_logout(self):
        user = self.make_user("ops@brightbots.in")
        login = self.client.post("/auth/login", json={"email": "ops@brightbots.in", "password": PASSWORD}).json()

        r = self.client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]})
        self.assertEqual(r.status_code, 200, r.text)
        # Single use
        r = self.client.post("/auth/refresh", json={"refresh_token": login["refresh_token"]})
        self.assertEqual(r.status_code, 400)

        headers = {"Authorization": f"Bearer {login['access_token']}"}
        self.assertEqual(self.client.post("/auth/logout", headers=headers).status_code, 200)
        self.assertEqual(self.client.get("/auth/me", headers=headers).status_code, 401)

        # Refresh tokens are not accepted as access tokens
        bad = {"Authorization": f"Bearer {create_refresh_token(str(user.id))}"}
        self.assertEqual(self.client.get("/auth/me", headers=bad).status_code, 401)

    def test_missing_token(self):
        self.assertEqual(self.client.get("/clients").status_code, 401)


class RobotApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.robot = self.make_robot()
        self.viewer = self.auth_headers(self.make_user("viewer@brightbots.in", role="viewer"))
        self.admin = self.auth_headers(self.make_user("admin@brightbots.in", role="admin"))
        self.root = self.auth_headers(self.make_user("root@brightbots.in", role="super_admin"))

    def test_grid(self):
        self.make_robot(site_name="Parola", rbt_id="RBT12")
        self.make_robot(site_name="Indave", rbt_id="RBT1")
        r = self.client.get("/clients/juniper/rbts", headers=self.viewer)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual([(row["site"], row["id"]) for row in r.json()], [("Indave", "RBT1"), ("Parola", "RBT3"), ("Parola", "RBT12")])

        r = self.client.get("/clients/Juniper/rbts", params={"site": ["Indave"]}, headers=self.viewer)
        self.assertEqual([row["id"] for row in r.json()], ["RBT1"])

        row = self.client.get(self.robot_url(), headers=self.viewer).json()
        self.assertEqual(row["ageing"], 0)
        self.assertFalse(row["show_part_issues"])
        self.assertEqual(len(row["part_issues"]), 33)

    def test_missing_context_is_404(self):
        self.assertEqual(self.client.get("/clients/Nope/rbts", headers=self.viewer).json()["detail"], "Client not found")
        self.assertEqual(self.client.get(self.robot_url(site="Nope"), headers=self.viewer).json()["detail"], "Site not found")
        r = self.client.post(f"{self.robot_url(rbt_id='RBT99')}/status", json={"field": "running_status", "value": "Manual"}, headers=self.admin)
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["detail"], "RBT not found")

    def test_manual_scenario(self):
        r = self.client.post(
            f"{self.robot_url()}/status",
            json={"field": "running_status", "value": "Manual", "target_date": "2024-04-01"},
            headers=self.admin,
        )
        self.assertEqual(r.status_code, 200, r.text)
        body = r.json()
        self.assertTrue(body["changed"])
        self.assertEqual(body["rbt"]["running_status"], "Manual")
        self.assertEqual(body["rbt"]["breakdown_status"], "Running With Issue")
        self.assertIsNotNone(body["rbt"]["running_manual_at"])
        self.assertEqual(body["rbt"]["ageing"], 0)
        self.assertEqual(body["rbt"]["target_date"], "2024-04-01")
        self.assertTrue(body["rbt"]["show_part_issues"])

        r = self.client.post(f"{self.robot_url()}/status", json={"field": "breakdown_status", "value": "N/A"}, headers=self.admin)
        self.assertEqual(r.status_code, 200, r.text)
        rbt = r.json()["rbt"]
        self.assertEqual(rbt["running_status"], "Auto")
        self.assertIsNone(rbt["running_manual_at"])
        self.assertIsNone(rbt["running_not_running_at"])
        self.assertEqual(rbt["ageing"], 0)

        logs = self.client.get("/logs", params={"client": "Juniper"}, headers=self.admin).json()
        self.assertEqual({l["field"] for l in logs}, {"running_status", "breakdown_status", "target_date"})
        history = self.client.get(f"{self.robot_url()}/history", headers=self.admin).json()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["data"]["running_status"], "Auto")

    def test_status_validation(self):
        r = self.client.post(f"{self.robot_url()}/status", json={"field": "running_status", "value": "Asleep"}, headers=self.admin)
        self.assertEqual(r.status_code, 422)
        r = self.client.post(f"{self.robot_url()}/status", json={"field": "running_status", "value": "Manual"}, headers=self.admin)
        self.assertEqual(r.status_code, 422)
        self.assertIn("target date", r.json()["detail"])
        self.assertEqual(self.db.query(RobotLog).count(), 0)

    def test_target_date_can_be_switched_off(self):
        with mock.patch.object(settings, "require_target_date", False):
            r = self.client.post(f"{self.robot_url()}/status", json={"field": "running_status", "value": "Not Running"}, headers=self.admin)
        self.assertEqual(r.status_code, 200, r.text)

    def test_viewer_cannot_write(self):
        r = self.client.post(f"{self.robot_url()}/status", json={"field": "running_status", "value": "Manual", "target_date": "2024-04-01"}, headers=self.viewer)
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.json()["detail"], "Forbidden")
        self.assertEqual(self.client.post(f"{self.robot_url()}/part-issues/BATTERY/toggle", headers=self.viewer).status_code, 403)
        self.assertEqual(self.db.query(RobotLog).count(), 0)

    def test_viewer_delete_is_rejected(self):
        r = self.client.delete(self.robot_url(), headers=self.viewer)
        self.assertEqual(r.status_code, 403)
        self.assertEqual(self.client.delete(self.robot_url(), headers=self.admin).status_code, 403)
        self.db.expire_all()
        self.assertEqual(self.db.query(Robot).count(), 1)

    def test_super_admin_delete_leaves_audit_trail(self):
        self.client.patch(f"{self.robot_url()}/fields", json={"field": "work", "value": "Trial"}, headers=self.admin)
        r = self.client.delete(self.robot_url(), headers=self.root)
        self.assertEqual(r.status_code, 200, r.text)
        self.db.expire_all()
        self.assertEqual(self.db.query(Robot).count(), 0)
        self.assertEqual(self.db.query(RobotLog).count(), 1)
        self.assertEqual(self.db.query(RobotHistory).count(), 1)

    def test_failed_delete_rolls_back(self):
        boom = OperationalError("DELETE FROM rbts", {}, Exception("database is locked"))
        with mock.patch.object(Session, "commit", side_effect=boom):
            r = self.client.delete(self.robot_url(), headers=self.root)
        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.json()["detail"], "Update failed")
        self.db.expire_all()
        self.assertEqual(self.db.query(Robot).count(), 1)

    def test_field_edit_permissions(self):
        r = self.client.patch(f"{self.robot_url()}/fields", json={"field": "cleaner_did", "value": "CL-1"}, headers=self.admin)
        self.assertEqual(r.status_code, 403)
        r = self.client.patch(f"{self.robot_url()}/fields", json={"field": "cleaner_did", "value": "CL-1"}, headers=self.root)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["rbt"]["cleaner_did"], "CL-1")
        r = self.client.patch(f"{self.robot_url()}/fields", json={"field": "work", "value": "Part Testing"}, headers=self.admin)
        self.assertEqual(r.json()["rbt"]["work"], "Part Testing")
        r = self.client.patch(f"{self.robot_url()}/fields", json={"field": "work", "value": "Nap"}, headers=self.admin)
        self.assertEqual(r.status_code, 400)

    def test_part_issue_flow(self):
        url = f"{self.robot_url()}/part-issues/BATTERY"
        r = self.client.put(f"{url}/dispatch_date", json={"value": "2024-01-05"}, headers=self.admin)
        self.assertEqual(r.status_code, 409)

        r = self.client.post(f"{url}/toggle", headers=self.admin)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["rbt"]["selected_part_count"], 1)

        r = self.client.put(f"{url}/dispatch_date", json={"value": "2024-01-05"}, headers=self.admin)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["rbt"]["part_issues"]["BATTERY"]["dispatch_date"], "2024-01-05")

        r = self.client.put(f"{url}/dispatch_date", json={"value": "2024-01-05"}, headers=self.admin)
        self.assertFalse(r.json()["changed"])

        r = self.client.post(f"{url}/toggle", headers=self.admin)
        self.assertEqual(r.json()["rbt"]["part_issues"]["BATTERY"], {"selected": False, "dispatch_date": None, "delivery_date": None})

        self.assertEqual(self.client.post(f"{self.robot_url()}/part-issues/GUIDE WHEEL/toggle", headers=self.admin).status_code, 400)
        self.assertEqual(self.client.put(f"{url}/shipped_date", json={"value": "2024-01-05"}, headers=self.admin).status_code, 400)

    def test_add_robot_gets_next_id(self):
        self.make_robot(rbt_id="RBT9")
        r = self.client.post("/clients/Juniper/sites/Parola/rbts", json={"cleaner_did": "CL-10"}, headers=self.admin)
        self.assertEqual(r.status_code, 201, r.text)
        self.assertEqual(r.json()["id"], "RBT10")
        self.assertEqual(r.json()["running_status"], "Auto")
        self.assertEqual(self.client.post("/clients/Juniper/sites/Parola/rbts", json={}, headers=self.viewer).status_code, 403)

    def test_since_returns_only_recent_changes(self):
        self.client.patch(f"{self.robot_url()}/fields", json={"field": "work", "value": "Trial"}, headers=self.admin)
        self.make_robot(rbt_id="RBT4")
        since = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
        r = self.client.get("/clients/Juniper/rbts", params={"since": since}, headers=self.viewer)
        self.assertEqual([row["id"] for row in r.json()], ["RBT3"])


class ClientAndDashboardApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.viewer = self.auth_headers(self.make_user("viewer@brightbots.in", role="viewer"))
        self.admin = self.auth_headers(self.make_user("admin@brightbots.in", role="admin"))

    def test_clients_and_sites(self):
        r = self.client.post("/clients", json={"name": "Juniper"}, headers=self.admin)
        self.assertEqual(r.status_code, 201, r.text)
        self.assertEqual(self.client.post("/clients", json={"name": "juniper"}, headers=self.admin).status_code, 409)
        self.assertEqual(self.client.post("/clients", json={"name": "Acme"}, headers=self.viewer).status_code, 403)

        r = self.client.post("/clients/Juniper/sites", json={"name": "Parola"}, headers=self.admin)
        self.assertEqual(r.status_code, 201, r.text)
        self.assertEqual(self.client.post("/clients/Juniper/sites", json={"name": "Parola"}, headers=self.admin).status_code, 409)

        self.client.post("/clients/Juniper/sites/Parola/rbts", json={}, headers=self.admin)
        sites = self.client.get("/clients/Juniper/sites", headers=self.viewer).json()
        self.assertEqual([(s["name"], s["rbt_count"]) for s in sites], [("Parola", 1)])
        self.assertEqual([c["name"] for c in self.client.get("/clients", headers=self.viewer).json()], ["Juniper"])

    def test_dashboard_and_export(self):
        self.make_robot(rbt_id="RBT1")
        self.make_robot(rbt_id="RBT2", running_status="Manual", breakdown_status="Breakdown",
                        running_manual_at=datetime.now(timezone.utc) - timedelta(days=3, hours=1))
        self.make_robot(site_name="Tembhe", rbt_id="RBT7", running_status="Not Running", breakdown_status="Breakdown",
                        running_not_running_at=datetime.now(timezone.utc) - timedelta(days=1, hours=1))

        r = self.client.get("/clients/Juniper/dashboard", headers=self.viewer)
        self.assertEqual(r.status_code, 200, r.text)
        body = r.json()
        self.assertEqual(body["summary"], {"total": 3, "auto": 1, "manual": 1, "not_running": 1})
        self.assertEqual(body["sites"], ["Parola", "Tembhe"])
        self.assertEqual(body["refresh_seconds"], 30)
        ageing = {row["id"]: row["ageing"] for row in body["rows"]}
        self.assertEqual(ageing, {"RBT1": 0, "RBT2": 3, "RBT7": 1})

        r = self.client.get("/clients/Juniper/dashboard", params={"breakdown_status": "Breakdown", "site": "Parola"}, headers=self.viewer)
        self.assertEqual([row["id"] for row in r.json()["rows"]], ["RBT2"])

        r = self.client.get("/clients/Juniper/dashboard/export", headers=self.viewer)
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.headers["content-type"].startswith("text/csv"))
        lines = r.text.strip().splitlines()
        self.assertEqual(lines[0], "Site,RBT,Running Status,Breakdown Status,Work,Ageing,Last Updated")
        self.assertEqual(len(lines), 4)

    def test_logs_are_admin_only_and_exportable(self):
        self.make_robot()
        self.client.patch("/clients/Juniper/sites/Parola/rbts/RBT3/fields", json={"field": "work", "value": "Trial"}, headers=self.admin)

        self.assertEqual(self.client.get("/logs", headers=self.viewer).status_code, 403)
        r = self.client.get("/logs/export", headers=self.admin)
        self.assertEqual(r.status_code, 200)
        lines = r.text.strip().splitlines()
        self.assertEqual(lines[0], "Client,Site,RBT ID,Field,Old Value,New Value,Updated By,Time")
        self.assertTrue(lines[1].startswith("Juniper,Parola,RBT3,work,-,Trial,admin@brightbots.in,"))


class UserAdminApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.root_user = self.make_user(settings.super_admin_email, role="super_admin")
        self.root = self.auth_headers(self.root_user)
        self.other = self.make_user("tech@brightbots.in", role="viewer")

    def test_role_changes(self):
        r = self.client.patch(f"/users/{self.other.id}/role", json={"role": "admin"}, headers=self.root)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["role"], "admin")
        self.assertEqual(self.client.patch(f"/users/{self.other.id}/role", json={"role": "owner"}, headers=self.root).status_code, 422)

        admin_headers = self.auth_headers(self.other)
        self.assertEqual(self.client.get("/users", headers=admin_headers).status_code, 403)

    def test_super_admin_is_protected(self):
        r = self.client.patch(f"/users/{self.root_user.id}/role", json={"role": "viewer"}, headers=self.root)
        self.assertEqual(r.status_code, 400)
        self.assertEqual(self.client.delete(f"/users/{self.root_user.id}", headers=self.root).status_code, 400)

    def test_delete_user(self):
        self.assertEqual(self.client.delete(f"/users/{self.other.id}", headers=self.root).status_code, 200)
        self.assertEqual([u["email"] for u in self.client.get("/users", headers=self.root).json()], [settings.super_admin_email])
        self.assertEqual(self.client.delete("/users/not-a-uuid", headers=self.root).status_code, 404)


if __name__ == "__main__":
    unittest.main()
