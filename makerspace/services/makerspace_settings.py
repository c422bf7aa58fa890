from __future__ import annotations

import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from makerspace.models.shop_models import AppSetting
from makerspace.services.errors import InvalidRequestError
from makerspace.services.member_service import require_right
from makerspace.services.timeutil import utc_now


MAKERSPACE_TIMEZONE_SETTING_KEY = "makerspace.timezone"
FALLBACK_MAKERSPACE_TIMEZONE = "America/Los_Angeles"


def is_valid_iana_timezone(value: str | None) -> bool:
    candidate = (value or "").strip()
    if not candidate:
        return False
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def get_default_makerspace_timezone() -> str:
    candidate = (os.environ.get("MAKERSPACE_TIMEZONE") or "").strip()
    if is_valid_iana_timezone(candidate):
        return candidate
    return FALLBACK_MAKERSPACE_TIMEZONE


def get_makerspace_timezone(db: Session) -> str:
    setting = db.get(AppSetting, MAKERSPACE_TIMEZONE_SETTING_KEY)
    if setting and is_valid_iana_timezone(setting.Value):
        return setting.Value.strip()
    return get_default_makerspace_timezone()


def set_makerspace_timezone(db: Session, actor_id: int, timezone_name: str) -> AppSetting:
    require_right(db, actor_id, "manageSettings", "Only admins can change makerspace settings")
    value = (timezone_name or "").strip()
    if not is_valid_iana_timezone(value):
        raise InvalidRequestError("Invalid timezone")
    setting = db.get(AppSetting, MAKERSPACE_TIMEZONE_SETTING_KEY)
    if setting is None:
        setting = AppSetting(Key=MAKERSPACE_TIMEZONE_SETTING_KEY, Value=value, UpdatedAt=utc_now())
        db.add(setting)
    else:
        setting.Value = value
        setting.UpdatedAt = utc_now()
    db.commit()
    return setting
