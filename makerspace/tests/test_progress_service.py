import unittest

from makerspace.models.shop_models import TrainingModule, TrainingProgress
from makerspace.schemas.training import ProgressUpdate
from makerspace.services.errors import InactiveError, NotFoundError, ProgressRejectedError
from makerspace.services.progress_service import (
    get_module_progress,
    list_modules_with_progress,
    record_progress,
    validate_progress_update,
)
from makerspace.tests import support


class ValidateProgressUpdateTests(unittest.TestCase):
    def test_delta_exactly_at_tolerance_is_accepted(self):
        verdict = validate_progress_update(0, ProgressUpdate(watchedSeconds=75, sessionDuration=30), 100)
        self.assertTrue(verdict.valid)
        self.assertIsNone(verdict.reason)

    def test_delta_above_tolerance_is_rejected(self):
        verdict = validate_progress_update(0, ProgressUpdate(watchedSeconds=80, sessionDuration=30), 100)
        self.assertFalse(verdict.valid)
        self.assertTrue(verdict.reason.startswith("Progress delta"))

    def test_negative_delta_always_passes(self):
        verdict = validate_progress_update(80, ProgressUpdate(watchedSeconds=60, sessionDuration=10), 100)
        self.assertTrue(verdict.valid)

    def test_zero_session_with_no_new_coverage_passes(self):
        verdict = validate_progress_update(50, ProgressUpdate(watchedSeconds=50, sessionDuration=0), 100)
        self.assertTrue(verdict.valid)

    def test_watched_beyond_duration_is_checked_first(self):
        verdict = validate_progress_update(0, ProgressUpdate(watchedSeconds=120, sessionDuration=400), 100)
        self.assertEqual(verdict.reason, "Watched seconds exceed video duration")

    def test_oversized_session_is_rejected(self):
        verdict = validate_progress_update(0, ProgressUpdate(watchedSeconds=10, sessionDuration=301), 100)
        self.assertEqual(verdict.reason, "Session duration too large")

    def test_same_inputs_same_verdict(self):
        update = ProgressUpdate(watchedSeconds=80, sessionDuration=30)
        self.assertEqual(validate_progress_update(0, update, 100), validate_progress_update(0, update, 100))


class RecordProgressTests(unittest.TestCase):
    def setUp(self):
        self.engine = support.make_engine()
        self.db = support.make_session_factory(self.engine)()
        self.user = support.add_user(self.db, "member@example.com")
        self.module = support.add_module(self.db, duration=100)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _record(self, **fields):
        return record_progress(
            self.db,
            self.user.UserID,
            self.module.ModuleID,
            ProgressUpdate(**fields),
            now=support.NOW,
        )

    def test_first_update_creates_progress(self):
        progress = self._record(watchedSeconds=25, currentPosition=25, sessionDuration=10)
        self.assertEqual(progress.WatchedSeconds, 25)
        self.assertEqual(progress.WatchedRanges, [{"start": 0, "end": 25}])
        self.assertEqual(progress.LastPosition, 25)
        self.assertIsNone(progress.CompletedAt)

    def test_rejected_update_is_not_persisted(self):
        with self.assertRaises(ProgressRejectedError) as ctx:
            self._record(watchedSeconds=80, currentPosition=80, sessionDuration=10, videoDuration=60)
        self.assertIn("Progress delta", ctx.exception.message)
        self.assertEqual(self.db.query(TrainingProgress).count(), 0)
        self.assertEqual(self.db.get(TrainingModule, self.module.ModuleID).DurationSeconds, 100)

    def test_rewatching_does_not_double_count(self):
        support.add_progress(self.db, self.user, self.module, 0, 45)
        progress = self._record(watchedRanges=[{"start": 0, "end": 20}], currentPosition=20, sessionDuration=10)
        self.assertEqual(progress.WatchedSeconds, 45)
        self.assertEqual(progress.LastPosition, 20)

    def test_new_ranges_extend_coverage(self):
        support.add_progress(self.db, self.user, self.module, 0, 25)
        progress = self._record(watchedRanges=[{"start": 20, "end": 45}], currentPosition=45, sessionDuration=10)
        self.assertEqual(progress.WatchedSeconds, 45)

    def test_playback_window_is_used_without_explicit_claims(self):
        progress = self._record(currentPosition=30, sessionDuration=10)
        self.assertEqual(progress.WatchedRanges, [{"start": 20.0, "end": 30.0}])
        self.assertEqual(progress.WatchedSeconds, 10)

    def test_completion_is_stamped_once_threshold_reached(self):
        support.add_progress(self.db, self.user, self.module, 0, 85)
        progress = self._record(watchedRanges=[{"start": 85, "end": 95}], currentPosition=95, sessionDuration=10)
        self.assertEqual(progress.CompletedAt, support.NOW)

    def test_completion_is_never_cleared(self):
        support.add_progress(self.db, self.user, self.module, 0, 95, completed_at=support.NOW)
        progress = self._record(watchedRanges=[{"start": 0, "end": 5}], currentPosition=5, sessionDuration=5)
        self.assertEqual(progress.CompletedAt, support.NOW)

    def test_ended_playback_snaps_to_full_duration(self):
        support.add_progress(self.db, self.user, self.module, 0, 94)
        progress = self._record(currentPosition=99, sessionDuration=3, ended=True)
        self.assertEqual(progress.WatchedSeconds, 100)
        self.assertEqual(progress.WatchedRanges, [{"start": 0, "end": 100.0}])
        self.assertEqual(progress.LastPosition, 100)

    def test_reported_video_duration_does_not_change_module(self):
        self._record(watchedSeconds=10, currentPosition=10, sessionDuration=10, videoDuration=120)
        self.assertEqual(self.db.get(TrainingModule, self.module.ModuleID).DurationSeconds, 100)

    def test_shorter_reported_duration_cannot_complete_module(self):
        long_module = support.add_module(self.db, title="Lathe Safety", duration=600)
        progress = record_progress(
            self.db,
            self.user.UserID,
            long_module.ModuleID,
            ProgressUpdate(
                watchedRanges=[{"start": 0, "end": 10}],
                currentPosition=10,
                sessionDuration=5,
                videoDuration=10,
            ),
            now=support.NOW,
        )
        self.assertEqual(self.db.get(TrainingModule, long_module.ModuleID).DurationSeconds, 600)
        self.assertEqual(progress.WatchedSeconds, 10)
        self.assertIsNone(progress.CompletedAt)
        self.assertEqual(get_module_progress(self.db, self.user.UserID, long_module.ModuleID)["watchedPercent"], 1)

    def test_legacy_progress_without_ranges(self):
        support.add_progress(self.db, self.user, self.module, watched_seconds=40)
        progress = self._record(watchedRanges=[{"start": 40, "end": 50}], currentPosition=50, sessionDuration=10)
        self.assertEqual(progress.WatchedSeconds, 50)
        self.assertEqual(progress.WatchedRanges, [{"start": 0.0, "end": 50.0}])

    def test_inactive_and_missing_modules(self):
        inactive = support.add_module(self.db, title="Old", status="inactive")
        with self.assertRaises(InactiveError):
            record_progress(self.db, self.user.UserID, inactive.ModuleID, ProgressUpdate(watchedSeconds=1))
        with self.assertRaises(NotFoundError):
            record_progress(self.db, self.user.UserID, 9999, ProgressUpdate(watchedSeconds=1))

    def test_progress_read_model(self):
        support.add_progress(self.db, self.user, self.module, 0, 55)
        summary = get_module_progress(self.db, self.user.UserID, self.module.ModuleID)
        self.assertEqual(summary["watchedSeconds"], 55)
        self.assertEqual(summary["watchedPercent"], 55)
        self.assertFalse(summary["completed"])

        support.add_module(self.db, title="Router Basics", duration=200)
        listing = list_modules_with_progress(self.db, self.user.UserID)
        self.assertEqual([row["title"] for row in listing], ["Laser Safety", "Router Basics"])
        self.assertEqual(listing[1]["watchedSeconds"], 0)


if __name__ == "__main__":
    unittest.main()
