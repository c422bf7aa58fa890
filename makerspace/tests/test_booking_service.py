import shutil
import tempfile
import threading
import unittest
from datetime import datetime

from makerspace.models.shop_models import AuditLog, NotificationQueue, Reservation
from makerspace.services.booking_service import (
    cancel_reservation,
    create_reservation,
    decide_reservation,
    get_reservation,
    list_machine_bookings,
    list_user_reservations,
    serialize_reservation,
)
from makerspace.services.errors import (
    AuthorizationError,
    ConflictError,
    InvalidRequestError,
    InvalidTransitionError,
)
from makerspace.tests import support


START = datetime(2025, 3, 10, 10)
END = datetime(2025, 3, 10, 12)


class ReservationWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.engine = support.make_engine()
        self.db = support.make_session_factory(self.engine)()
        self.manager = support.add_user(self.db, "manager@example.com", role="manager")
        self.member = support.add_user(self.db, "member@example.com")
        self.other = support.add_user(self.db, "other@example.com")
        self.machine = support.add_machine(self.db)
        support.add_checkout(self.db, self.member, self.machine, self.manager)
        support.add_checkout(self.db, self.other, self.machine, self.manager)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _reserve(self, user=None, start=START, end=END):
        return create_reservation(
            self.db, (user or self.member).UserID, self.machine.MachineID, start, end, now=support.NOW
        )

    def test_create_reservation_is_pending_and_queues_event(self):
        reservation = self._reserve()
        self.assertEqual(reservation.Status, "pending")
        self.assertEqual(serialize_reservation(reservation)["startTime"], "2025-03-10T10:00:00Z")
        notification = self.db.query(NotificationQueue).one()
        self.assertEqual(notification.NotificationType, "reservation_created")
        self.assertEqual(notification.UserID, self.member.UserID)
        self.assertIsNone(notification.SentAt)
        self.assertEqual(self.db.query(AuditLog).filter(AuditLog.Action == "reservation_created").count(), 1)

    def test_overlap_is_a_conflict_but_touching_is_not(self):
        first = self._reserve()
        with self.assertRaises(ConflictError) as ctx:
            self._reserve(self.other, datetime(2025, 3, 10, 11), datetime(2025, 3, 10, 13))
        self.assertEqual(ctx.exception.role, "machine")
        self.assertEqual(ctx.exception.conflict_ids, [first.ReservationID])
        self._reserve(self.other, END, datetime(2025, 3, 10, 13))

    def test_closed_reservations_do_not_block(self):
        support.add_reservation(self.db, self.other, self.machine, START, END, status="rejected")
        support.add_reservation(self.db, self.other, self.machine, START, END, status="cancelled")
        self.assertEqual(self._reserve().Status, "pending")

    def test_eligibility_is_checked_before_conflicts(self):
        self._reserve(self.other)
        newcomer = support.add_user(self.db, "new@example.com")
        with self.assertRaises(AuthorizationError) as ctx:
            self._reserve(newcomer)
        self.assertEqual(ctx.exception.reasons, ["Manager checkout not approved"])

    def test_invalid_windows(self):
        with self.assertRaises(InvalidRequestError):
            self._reserve(start=END, end=START)
        with self.assertRaises(InvalidRequestError):
            self._reserve(start=datetime(2025, 3, 1, 10), end=datetime(2025, 3, 1, 11))

    def test_review_flow(self):
        reservation = self._reserve()
        with self.assertRaises(AuthorizationError):
            decide_reservation(self.db, reservation.ReservationID, self.other.UserID, "approve")
        with self.assertRaises(InvalidTransitionError):
            decide_reservation(self.db, reservation.ReservationID, self.manager.UserID, "confirm", now=support.NOW)

        decide_reservation(self.db, reservation.ReservationID, self.manager.UserID, "approve", notes="ok", now=support.NOW)
        self.assertEqual(reservation.Status, "approved")
        self.assertEqual(reservation.ReviewedBy, self.manager.UserID)
        decide_reservation(self.db, reservation.ReservationID, self.manager.UserID, "confirm", now=support.NOW)
        self.assertEqual(reservation.Status, "confirmed")

    def test_reject_needs_reason_and_is_terminal(self):
        reservation = self._reserve()
        with self.assertRaises(InvalidRequestError):
            decide_reservation(self.db, reservation.ReservationID, self.manager.UserID, "reject", now=support.NOW)
        decide_reservation(
            self.db, reservation.ReservationID, self.manager.UserID, "reject", reason="Maintenance", now=support.NOW
        )
        self.assertEqual(reservation.DecisionReason, "Maintenance")
        with self.assertRaises(InvalidTransitionError):
            decide_reservation(self.db, reservation.ReservationID, self.manager.UserID, "approve", now=support.NOW)

    def test_approval_rechecks_conflicts_excluding_itself(self):
        pending = support.add_reservation(self.db, self.member, self.machine, START, END)
        support.add_reservation(self.db, self.other, self.machine, datetime(2025, 3, 10, 11), END, status="approved")
        with self.assertRaises(ConflictError):
            decide_reservation(self.db, pending.ReservationID, self.manager.UserID, "approve", now=support.NOW)
        self.assertEqual(self.db.get(Reservation, pending.ReservationID).Status, "pending")

    def test_member_cancellation(self):
        reservation = self._reserve()
        with self.assertRaises(AuthorizationError):
            cancel_reservation(self.db, reservation.ReservationID, self.other.UserID, now=support.NOW)
        with self.assertRaises(InvalidRequestError):
            cancel_reservation(self.db, reservation.ReservationID, self.member.UserID, now=datetime(2025, 3, 10, 11))
        cancel_reservation(self.db, reservation.ReservationID, self.member.UserID, reason="Sick", now=support.NOW)
        self.assertEqual(reservation.Status, "cancelled")
        with self.assertRaises(InvalidTransitionError):
            cancel_reservation(self.db, reservation.ReservationID, self.member.UserID, now=support.NOW)

    def test_confirmed_reservation_completes_after_end(self):
        reservation = support.add_reservation(self.db, self.member, self.machine, START, END, status="confirmed")
        after = datetime(2025, 3, 10, 13)
        self.assertEqual(get_reservation(self.db, reservation.ReservationID, now=after).Status, "completed")
        with self.assertRaises(InvalidTransitionError):
            cancel_reservation(self.db, reservation.ReservationID, self.member.UserID, now=after)

    def test_machine_bookings_listing(self):
        kept = support.add_reservation(self.db, self.member, self.machine, START, END, status="approved")
        support.add_reservation(self.db, self.other, self.machine, START, END, status="rejected")
        finished = support.add_reservation(
            self.db, self.other, self.machine, datetime(2025, 3, 9, 10), datetime(2025, 3, 9, 12), status="confirmed"
        )
        bookings = list_machine_bookings(
            self.db, self.machine.MachineID, datetime(2025, 3, 9), datetime(2025, 3, 11), now=datetime(2025, 3, 9, 18)
        )
        self.assertEqual([b.ReservationID for b in bookings], [kept.ReservationID])
        self.assertEqual(self.db.get(Reservation, finished.ReservationID).Status, "completed")
        self.assertEqual(len(list_user_reservations(self.db, self.other.UserID, now=support.NOW)), 2)


class ConcurrentReservationTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.engine = support.make_engine(support.file_db_url(self.tmpdir))
        self.factory = support.make_session_factory(self.engine)
        db = self.factory()
        manager = support.add_user(db, "manager@example.com", role="manager")
        machine = support.add_machine(db)
        self.machine_id = machine.MachineID
        self.user_ids = []
        for email in ("a@example.com", "b@example.com"):
            user = support.add_user(db, email)
            support.add_checkout(db, user, machine, manager)
            self.user_ids.append(user.UserID)
        db.close()

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_identical_window_only_one_wins(self):
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def attempt(user_id):
            db = self.factory()
            try:
                barrier.wait()
                reservation = create_reservation(db, user_id, self.machine_id, START, END, now=support.NOW)
                result = ("ok", reservation.ReservationID)
            except ConflictError as exc:
                result = ("conflict", exc.role)
            finally:
                db.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in self.user_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(kind for kind, _ in outcomes), ["conflict", "ok"])
        self.assertIn(("conflict", "machine"), outcomes)
        db = self.factory()
        try:
            self.assertEqual(db.query(Reservation).count(), 1)
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
