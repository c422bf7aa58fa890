import importlib
import json
import os
import sys
import threading
import time
import unittest
from unittest import mock

from makerspace.models.shop_models import AppSetting, AuditLog, NotificationQueue
from makerspace.services.errors import AuthorizationError, InvalidRequestError
from makerspace.services.events import mark_notifications_sent, pending_notifications, record_event
from makerspace.services.locks import resource_guard, resource_key
from makerspace.services.makerspace_settings import (
    FALLBACK_MAKERSPACE_TIMEZONE,
    get_default_makerspace_timezone,
    get_makerspace_timezone,
    is_valid_iana_timezone,
    set_makerspace_timezone,
)
from makerspace.tests import support


class MakerspaceTimezoneTests(unittest.TestCase):
    def setUp(self):
        self.engine = support.make_engine()
        self.db = support.make_session_factory(self.engine)()
        self.admin = support.add_user(self.db, "admin@example.com", role="admin")

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_default_comes_from_environment(self):
        with mock.patch.dict(os.environ, {"MAKERSPACE_TIMEZONE": "Europe/Berlin"}):
            self.assertEqual(get_default_makerspace_timezone(), "Europe/Berlin")
        with mock.patch.dict(os.environ, {"MAKERSPACE_TIMEZONE": "Mars/Olympus"}):
            self.assertEqual(get_default_makerspace_timezone(), FALLBACK_MAKERSPACE_TIMEZONE)

    def test_stored_setting_wins(self):
        set_makerspace_timezone(self.db, self.admin.UserID, " America/New_York ")
        self.assertEqual(get_makerspace_timezone(self.db), "America/New_York")
        set_makerspace_timezone(self.db, self.admin.UserID, "Europe/London")
        self.assertEqual(self.db.query(AppSetting).count(), 1)
        self.assertEqual(get_makerspace_timezone(self.db), "Europe/London")

    def test_invalid_timezone_is_rejected(self):
        self.assertFalse(is_valid_iana_timezone(""))
        self.assertFalse(is_valid_iana_timezone("Not/AZone"))
        with self.assertRaises(InvalidRequestError):
            set_makerspace_timezone(self.db, self.admin.UserID, "Not/AZone")
        self.assertEqual(self.db.query(AppSetting).count(), 0)

    def test_managers_cannot_change_timezone(self):
        manager = support.add_user(self.db, "manager@example.com", role="manager")
        with self.assertRaises(AuthorizationError):
            set_makerspace_timezone(self.db, manager.UserID, "Europe/Berlin")
        self.assertEqual(self.db.query(AppSetting).count(), 0)


class EventOutboxTests(unittest.TestCase):
    def setUp(self):
        self.engine = support.make_engine()
        self.db = support.make_session_factory(self.engine)()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_event_writes_one_row_per_recipient_and_an_audit_entry(self):
        record_event(
            self.db,
            "reservation_created",
            "Reservation",
            7,
            {"bookingId": 7, "startTime": support.NOW},
            recipient_ids=[3, 4, 3],
            actor_id=3,
        )
        self.db.commit()

        rows = pending_notifications(self.db)
        self.assertEqual([row.UserID for row in rows], [3, 4])
        payload = json.loads(rows[0].Payload)
        self.assertEqual(payload["type"], "reservation_created")
        self.assertEqual(payload["startTime"], "2025-03-05T12:00:00Z")

        audit = self.db.query(AuditLog).one()
        self.assertEqual((audit.EntityType, audit.EntityID, audit.Action, audit.UserID), ("Reservation", 7, "reservation_created", 3))

    def test_broadcast_event_has_no_recipient(self):
        record_event(self.db, "machine_inactive", "Machine", 1, {"machineId": 1})
        self.db.commit()
        self.assertIsNone(self.db.query(NotificationQueue).one().UserID)

    def test_sent_notifications_leave_the_queue(self):
        record_event(self.db, "checkout_approved", "ManagerCheckout", 1, {}, recipient_ids=[1, 2])
        self.db.commit()
        first, second = pending_notifications(self.db)
        self.assertEqual(mark_notifications_sent(self.db, [first.NotificationID]), 1)
        self.db.commit()
        self.assertEqual([row.NotificationID for row in pending_notifications(self.db)], [second.NotificationID])
        self.assertEqual(mark_notifications_sent(self.db, []), 0)


class ResourceGuardTests(unittest.TestCase):
    def setUp(self):
        self.engine = support.make_engine()
        self.db = support.make_session_factory(self.engine)()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_same_key_is_serialized(self):
        order = []
        entered = threading.Event()

        def worker():
            entered.wait(5)
            with resource_guard(self.db, resource_key("machine", 99)):
                order.append("second")

        thread = threading.Thread(target=worker)
        thread.start()
        with resource_guard(self.db, resource_key("machine", 99), resource_key("user", 1)):
            entered.set()
            time.sleep(0.05)
            order.append("first")
        thread.join(5)
        self.assertEqual(order, ["first", "second"])

    def test_guard_releases_on_error(self):
        with self.assertRaises(ValueError):
            with resource_guard(self.db, resource_key("manager", 5)):
                raise ValueError("boom")
        with resource_guard(self.db, resource_key("manager", 5)):
            pass


class SessionModuleTests(unittest.TestCase):
    def tearDown(self):
        for name in ("makerspace.db.deps", "makerspace.db.session"):
            sys.modules.pop(name, None)

    def test_session_requires_database_url(self):
        sys.modules.pop("makerspace.db.session", None)
        with mock.patch.dict(os.environ, {"MAKERSPACE_DB_URL": ""}), mock.patch("dotenv.load_dotenv"):
            with self.assertRaises(RuntimeError):
                importlib.import_module("makerspace.db.session")

    def test_dependency_yields_working_session(self):
        sys.modules.pop("makerspace.db.session", None)
        with mock.patch.dict(os.environ, {"MAKERSPACE_DB_URL": "sqlite+pysqlite:///:memory:"}):
            session_module = importlib.import_module("makerspace.db.session")
            deps = importlib.import_module("makerspace.db.deps")
        session_module.init_db()

        with session_module.session_scope() as db:
            db.add(AppSetting(Key="makerspace.timezone", Value="UTC"))

        generator = deps.get_makerspace_db()
        db = next(generator)
        try:
            self.assertEqual(get_makerspace_timezone(db), "UTC")
        finally:
            generator.close()
        session_module.engine_makerspace.dispose()


if __name__ == "__main__":
    unittest.main()
