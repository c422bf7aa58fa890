from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from makerspace.models.shop_models import RecordStatus, TrainingModule, TrainingProgress
from makerspace.schemas.training import ProgressUpdate
from makerspace.services.errors import InactiveError, NotFoundError, ProgressRejectedError
from makerspace.services.repositories import TrainingModuleRepository, TrainingProgressRepository
from makerspace.services.timeutil import isoformat_utc, utc_now
from makerspace.services.watch_ranges import (
    WatchedRange,
    add_watched_range,
    normalize_watched_ranges,
    serialize_ranges,
    stored_ranges,
    watched_range_seconds,
)


LOGGER = logging.getLogger("makerspace.training")

MAX_SESSION_SECONDS = float(os.environ.get("PROGRESS_MAX_SESSION_SECONDS") or "300")
PLAYBACK_TOLERANCE = float(os.environ.get("PROGRESS_PLAYBACK_TOLERANCE") or "2.5")
ENDED_POSITION_TOLERANCE_SECONDS = 3
END_COMPLETION_SNAP_SECONDS = 5


@dataclass(frozen=True)
class ProgressValidation:
    valid: bool
    reason: str | None = None


def validate_progress_update(
    previous_watched_seconds: float,
    update: ProgressUpdate,
    video_duration_seconds: float,
) -> ProgressValidation:
    """Anti-cheat gate for a single client progress report.

    Checks run in order and the first failure wins. A report that claims no
    new coverage (delta <= 0) always passes the playback-rate check.
    """
    watched_seconds = float(update.watchedSeconds or 0)
    session_duration = float(update.sessionDuration or 0)

    if watched_seconds > video_duration_seconds:
        return ProgressValidation(False, "Watched seconds exceed video duration")

    if session_duration > MAX_SESSION_SECONDS:
        return ProgressValidation(False, "Session duration too large")

    delta = watched_seconds - float(previous_watched_seconds or 0)
    if delta > 0 and delta > PLAYBACK_TOLERANCE * session_duration:
        return ProgressValidation(
            False,
            "Progress delta exceeds plausible playback for the reported session duration",
        )

    return ProgressValidation(True)


def claimed_ranges(update: ProgressUpdate, duration_seconds: float) -> list[WatchedRange]:
    if update.watchedRanges:
        raw = [WatchedRange(r.start, r.end) for r in update.watchedRanges]
    elif update.watchedSeconds and update.watchedSeconds > 0:
        raw = [WatchedRange(0, update.watchedSeconds)]
    elif update.sessionDuration and update.sessionDuration > 0:
        position = float(update.currentPosition or 0)
        raw = [WatchedRange(max(0.0, position - update.sessionDuration), position)]
    else:
        raw = []
    return normalize_watched_ranges(raw, duration_seconds)


def _reached_end(update: ProgressUpdate, duration_seconds: float) -> bool:
    return (
        update.ended
        and duration_seconds > 0
        and update.currentPosition >= duration_seconds - ENDED_POSITION_TOLERANCE_SECONDS
    )


def merge_progress_ranges(
    existing: list[WatchedRange],
    update: ProgressUpdate,
    duration_seconds: float,
) -> list[WatchedRange]:
    merged = normalize_watched_ranges([*existing, *claimed_ranges(update, duration_seconds)], duration_seconds)
    if not _reached_end(update, duration_seconds):
        return merged

    merged = add_watched_range(
        merged,
        WatchedRange(max(0.0, duration_seconds - 1), duration_seconds),
        duration_seconds,
    )
    remaining = duration_seconds - watched_range_seconds(merged)
    if 0 < remaining <= END_COMPLETION_SNAP_SECONDS:
        return [WatchedRange(0, duration_seconds)]
    return merged


def watched_percent(watched_seconds: float, duration_seconds: float) -> int:
    if not duration_seconds or duration_seconds <= 0:
        return 0
    return min(100, int(math.floor(watched_seconds / duration_seconds * 100)))


def record_progress(
    db: Session,
    user_id: int,
    module_id: int,
    update: ProgressUpdate,
    now: datetime | None = None,
) -> TrainingProgress:
    """Fold an accepted progress report into the user's watched ranges.

    Rejected reports raise ProgressRejectedError and leave stored progress
    untouched.
    """
    current = now or utc_now()
    modules = TrainingModuleRepository(db)
    progress_repo = TrainingProgressRepository(db)

    module = modules.get(module_id)
    if not module:
        raise NotFoundError("Module not found")
    if module.Status != RecordStatus.ACTIVE.value:
        raise InactiveError("Module is not active")

    # The stored duration is authoritative; a differing player value is only reported.
    if update.videoDuration and update.videoDuration > 0 and update.videoDuration != module.DurationSeconds:
        LOGGER.warning(
            "Player reported duration %s for module %s (stored %s)",
            update.videoDuration,
            module.ModuleID,
            module.DurationSeconds,
        )
    duration = float(module.DurationSeconds or 0)

    existing = progress_repo.get(user_id, module_id)
    existing_ranges = (
        stored_ranges(existing.WatchedRanges, existing.WatchedSeconds, duration) if existing else []
    )
    merged = merge_progress_ranges(existing_ranges, update, duration)
    previous_coverage = watched_range_seconds(existing_ranges)
    merged_coverage = watched_range_seconds(merged)

    verdict = validate_progress_update(
        previous_coverage,
        update.model_copy(update={"watchedSeconds": merged_coverage}),
        duration,
    )
    if not verdict.valid:
        LOGGER.warning(
            "Rejected progress for user %s module %s: %s", user_id, module_id, verdict.reason
        )
        db.rollback()
        raise ProgressRejectedError(verdict.reason)

    saved_seconds = min(int(math.floor(merged_coverage)), int(duration))
    last_position = min(duration if update.ended else float(update.currentPosition or 0), duration)

    if existing is None:
        existing = TrainingProgress(UserID=user_id, ModuleID=module_id)
        db.add(existing)
    existing.WatchedSeconds = saved_seconds
    existing.WatchedRanges = serialize_ranges(merged)
    existing.LastPosition = last_position
    existing.UpdatedAt = current

    required = module.CompletionPercent or 90
    if existing.CompletedAt is None and watched_percent(saved_seconds, duration) >= required:
        existing.CompletedAt = current
        LOGGER.info("User %s completed module %s", user_id, module_id)

    db.commit()
    LOGGER.debug(
        "Progress for user %s module %s: %s/%s seconds",
        user_id,
        module_id,
        saved_seconds,
        int(duration),
    )
    return existing


def serialize_progress(module: TrainingModule, progress: TrainingProgress | None) -> dict:
    duration = float(module.DurationSeconds or 0)
    ranges = stored_ranges(progress.WatchedRanges, progress.WatchedSeconds, duration) if progress else []
    watched = min(int(math.floor(watched_range_seconds(ranges))), int(duration))
    return {
        "moduleID": module.ModuleID,
        "title": module.Title,
        "videoID": module.VideoID,
        "durationSeconds": module.DurationSeconds,
        "completionPercent": module.CompletionPercent,
        "watchedSeconds": watched,
        "watchedRanges": serialize_ranges(ranges),
        "watchedPercent": watched_percent(watched, duration),
        "lastPosition": progress.LastPosition if progress else 0,
        "completedAt": isoformat_utc(progress.CompletedAt) if progress else None,
        "completed": bool(progress and progress.CompletedAt),
    }


def get_module_progress(db: Session, user_id: int, module_id: int) -> dict:
    module = TrainingModuleRepository(db).get(module_id)
    if not module:
        raise NotFoundError("Module not found")
    progress = TrainingProgressRepository(db).get(user_id, module_id)
    return serialize_progress(module, progress)


def list_modules_with_progress(db: Session, user_id: int) -> list[dict]:
    modules = TrainingModuleRepository(db).active()
    by_module = {p.ModuleID: p for p in TrainingProgressRepository(db).for_user(user_id)}
    return [serialize_progress(module, by_module.get(module.ModuleID)) for module in modules]
