import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from sqlalchemy.exc import OperationalError

from rbt_dashboard.models.models import RobotHistory, RobotLog
from rbt_dashboard.services.access import Role
from rbt_dashboard.services.audit import (
    RobotScope,
    get_history,
    get_logs,
    history_date_key,
    log_and_update,
    rekey_legacy_rows,
    serialize_value,
)
from rbt_dashboard.services.ageing import ageing_days
from rbt_dashboard.services.part_issues import EntityField, PartIssueField
from rbt_dashboard.services.robots import (
    TargetDateRequired,
    apply_field_edit,
    apply_status_change,
    scope_for,
    set_part_issue_date,
    toggle_part_issue,
)

from tests.support import DatabaseTestCase, NOW, make_actor


class SerializeValueTests(unittest.TestCase):
    def test_values(self):
        self.assertEqual(serialize_value(None), "-")
        self.assertEqual(serialize_value(""), "-")
        self.assertEqual(serialize_value("Manual"), "Manual")
        self.assertEqual(serialize_value(True), "true")
        self.assertEqual(serialize_value(3), "3")
        self.assertEqual(serialize_value({"dispatch_date": "2024-01-05"}), '{"dispatch_date": "2024-01-05"}')
        self.assertEqual(serialize_value(NOW), "2024-03-10T09:30:00+00:00")

    def test_history_key_is_utc_day(self):
        late_evening = datetime(2024, 3, 10, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        self.assertEqual(history_date_key(late_evening), "2024-03-11")


class LogAndUpdateTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.robot = self.make_robot()
        self.actor = make_actor()
        self.scope = scope_for(self.robot)

    def _count(self, model) -> int:
        return self.db.query(model).count()

    def test_scope(self):
        self.assertEqual(self.scope, RobotScope(client="Juniper", site="Parola", rbt_id="RBT3"))

    def test_equal_values_write_nothing(self):
        wrote = log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), "Trial", "Trial", now=NOW)

        self.assertFalse(wrote)
        self.assertEqual(self._count(RobotLog), 0)
        self.assertEqual(self._count(RobotHistory), 0)
        self.db.refresh(self.robot)
        self.assertIsNone(self.robot.work)

    def test_deep_equal_part_maps_write_nothing(self):
        entry = {"selected": False, "dispatch_date": None, "delivery_date": None}
        wrote = log_and_update(self.db, self.actor, self.robot, self.scope, PartIssueField("RTC"), dict(entry), dict(entry), now=NOW)
        self.assertFalse(wrote)
        self.assertEqual(self._count(RobotLog), 0)

    def test_single_change_writes_entity_history_and_log(self):
        wrote = log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), None, "Trial", now=NOW)

        self.assertTrue(wrote)
        self.db.refresh(self.robot)
        self.assertEqual(self.robot.work, "Trial")

        history = get_history(self.db, self.scope)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].date_key, "2024-03-10")
        self.assertEqual(history[0].data, {"work": "Trial"})
        self.assertEqual(history[0].updated_by, "ops@brightbots.in")

        log = self.db.query(RobotLog).one()
        self.assertEqual((log.client, log.site, log.rbt_id), ("Juniper", "Parola", "RBT3"))
        self.assertEqual((log.field, log.old_value, log.new_value), ("work", "-", "Trial"))

    def test_same_day_changes_merge_into_one_history_row(self):
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), None, "Trial", now=NOW)
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("tc_did"), None, "TC-9", now=NOW + timedelta(hours=2))
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), "Trial", "Part Testing", now=NOW + timedelta(hours=3))

        history = get_history(self.db, self.scope)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].data, {"work": "Part Testing", "tc_did": "TC-9"})
        self.assertEqual(self._count(RobotLog), 3)

    def test_next_day_gets_a_new_history_row(self):
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), None, "Trial", now=NOW)
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), "Trial", "Part Testing", now=NOW + timedelta(days=1))

        keys = [h.date_key for h in get_history(self.db, self.scope)]
        self.assertEqual(keys, ["2024-03-11", "2024-03-10"])

    def test_failure_mid_sequence_rolls_back_every_write(self):
        boom = OperationalError("INSERT INTO rbt_history", {}, Exception("disk I/O error"))
        with mock.patch("rbt_dashboard.services.audit.merge_history", side_effect=boom):
            with self.assertRaises(OperationalError):
                apply_status_change(self.db, self.actor, self.robot, "running_status", "Manual", target_date="2024-03-20", now=NOW)

        self.db.refresh(self.robot)
        self.assertEqual(self.robot.running_status, "Auto")
        self.assertEqual(self.robot.breakdown_status, "N/A")
        self.assertIsNone(self.robot.running_manual_at)
        self.assertIsNone(self.robot.target_date)
        self.assertEqual(self._count(RobotLog), 0)
        self.assertEqual(self._count(RobotHistory), 0)

    def test_get_logs_filters_and_orders(self):
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), None, "Trial", now=NOW - timedelta(days=2))
        log_and_update(self.db, self.actor, self.robot, self.scope, EntityField("work"), "Trial", "Part Testing", now=NOW)
        other = self.make_robot(client_name="Acme", site_name="Kasare", rbt_id="RBT1")
        log_and_update(self.db, self.actor, other, scope_for(other), EntityField("work"), None, "Trial", now=NOW)

        juniper = get_logs(self.db, client="Juniper")
        self.assertEqual([l.new_value for l in juniper], ["Part Testing", "Trial"])

        recent = get_logs(self.db, start=NOW - timedelta(hours=1), end=NOW + timedelta(hours=1))
        self.assertEqual(len(recent), 2)


class StatusChangeTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.robot = self.make_robot()
        self.actor = make_actor()

    def test_manual_then_breakdown_na_scenario(self):
        changed = apply_status_change(self.db, self.actor, self.robot, "running_status", "Manual", require_target_date=False, now=NOW)

        self.assertTrue(changed)
        self.db.refresh(self.robot)
        self.assertEqual(self.robot.running_status, "Manual")
        self.assertEqual(self.robot.breakdown_status, "Running With Issue")
        self.assertIsNotNone(self.robot.running_manual_at)
        self.assertEqual(ageing_days(self.robot.running_status, self.robot.running_manual_at, None, NOW), 0)
        self.assertEqual(ageing_days(self.robot.running_status, self.robot.running_manual_at, None, NOW + timedelta(days=1)), 1)

        fields = sorted(l.field for l in self.db.query(RobotLog).all())
        self.assertEqual(fields, ["breakdown_status", "running_status"])

        apply_status_change(self.db, self.actor, self.robot, "breakdown_status", "N/A", now=NOW + timedelta(days=1))
        self.db.refresh(self.robot)
        self.assertEqual(self.robot.running_status, "Auto")
        self.assertEqual(self.robot.breakdown_status, "N/A")
        self.assertIsNone(self.robot.running_manual_at)
        self.assertIsNone(self.robot.running_not_running_at)

    def test_same_status_is_a_no_op(self):
        self.assertFalse(apply_status_change(self.db, self.actor, self.robot, "running_status", "Auto", now=NOW))
        self.assertEqual(self.db.query(RobotLog).count(), 0)

    def test_target_date_required_off_nominal(self):
        with self.assertRaises(TargetDateRequired):
            apply_status_change(self.db, self.actor, self.robot, "running_status", "Manual", now=NOW)
        self.assertEqual(self.db.query(RobotLog).count(), 0)

        apply_status_change(self.db, self.actor, self.robot, "running_status", "Manual", target_date="2024-03-20", now=NOW)
        self.db.refresh(self.robot)
        self.assertEqual(self.robot.target_date, "2024-03-20")
        fields = sorted(l.field for l in self.db.query(RobotLog).all())
        self.assertEqual(fields, ["breakdown_status", "running_status", "target_date"])

        # An existing target date satisfies later changes
        apply_status_change(self.db, self.actor, self.robot, "running_status", "Not Running", now=NOW)
        self.db.refresh(self.robot)
        self.assertEqual(self.robot.running_status, "Not Running")

    def test_field_edits(self):
        self.assertTrue(apply_field_edit(self.db, self.actor, self.robot, "cleaner_did", "  CL-42 "))
        self.db.refresh(self.robot)
        self.assertEqual(self.robot.cleaner_did, "CL-42")
        self.assertFalse(apply_field_edit(self.db, self.actor, self.robot, "cleaner_did", "CL-42"))
        with self.assertRaises(ValueError):
            apply_field_edit(self.db, self.actor, self.robot, "work", "Nap")
        with self.assertRaises(ValueError):
            apply_field_edit(self.db, self.actor, self.robot, "running_status", "Manual")
        with self.assertRaises(ValueError):
            apply_field_edit(self.db, self.actor, self.robot, "target_date", "next week")

    def test_part_issue_changes_are_logged_by_path(self):
        toggle_part_issue(self.db, self.actor, self.robot, "BATTERY")
        set_part_issue_date(self.db, self.actor, self.robot, "BATTERY", "dispatch_date", "2024-01-05")

        self.db.refresh(self.robot)
        self.assertEqual(self.robot.part_issues["BATTERY"], {"selected": True, "dispatch_date": "2024-01-05", "delivery_date": None})
        logs = {l.field: l for l in self.db.query(RobotLog).all()}
        self.assertIn("part_issues.BATTERY", logs)
        self.assertEqual(logs["part_issues.BATTERY.dispatch_date"].old_value, "-")
        self.assertEqual(logs["part_issues.BATTERY.dispatch_date"].new_value, "2024-01-05")

        history = get_history(self.db, scope_for(self.robot))[0]
        self.assertEqual(history.data["part_issues.BATTERY.dispatch_date"], "2024-01-05")

    def test_actor_role_is_not_consulted_by_the_logger(self):
        viewer = make_actor(Role.viewer, email="viewer@brightbots.in")
        apply_field_edit(self.db, viewer, self.robot, "work", "Trial")
        self.assertEqual(self.db.query(RobotLog).one().updated_by, "viewer@brightbots.in")


class RekeyLegacyRowsTests(DatabaseTestCase):
    def _history(self, client, rbt_id, date_key):
        self.db.add(RobotHistory(client=client, site="Parola", rbt_id=rbt_id, date_key=date_key, data={"work": "Trial"}))

    def _log(self, rbt_id):
        self.db.add(RobotLog(client=None, site="Parola", rbt_id=rbt_id, field="work", old_value="-", new_value="Trial", timestamp=NOW))

    def test_only_moved_robots_are_rekeyed(self):
        self._history(None, "RBT3", "2024-03-09")
        self._history(None, "RBT3", "2024-03-10")
        self._history("Juniper", "RBT3", "2024-03-10")
        self._history(None, "RBT5", "2024-03-09")
        self._log("RBT3")
        self._log("RBT5")
        self.db.commit()

        self.assertEqual(rekey_legacy_rows(self.db, "Parola", "Juniper", ["RBT3"]), (1, 1, 1))
        self.db.commit()

        legacy = {(h.rbt_id, h.date_key) for h in self.db.query(RobotHistory).filter(RobotHistory.client.is_(None))}
        self.assertEqual(legacy, {("RBT3", "2024-03-10"), ("RBT5", "2024-03-09")})
        self.assertEqual([l.rbt_id for l in self.db.query(RobotLog).filter(RobotLog.client.is_(None))], ["RBT5"])
        keys = [h.date_key for h in get_history(self.db, RobotScope(client="Juniper", site="Parola", rbt_id="RBT3"))]
        self.assertEqual(keys, ["2024-03-10", "2024-03-09"])

    def test_whole_site(self):
        self._history(None, "RBT3", "2024-03-09")
        self._history(None, "RBT5", "2024-03-09")
        self._log("RBT5")
        self.db.commit()

        self.assertEqual(rekey_legacy_rows(self.db, "Parola", "Juniper"), (2, 1, 0))
        self.assertEqual(rekey_legacy_rows(self.db, "Parola", "Juniper", []), (0, 0, 0))


if __name__ == "__main__":
    unittest.main()
