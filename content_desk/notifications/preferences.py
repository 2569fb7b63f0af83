"""
Notification preference evaluator.

Answers two questions for the fan-out engine: how often does this user want
to hear about content in this category, and is the user inside their quiet
hours right now. Users without a stored row get the defaults from Settings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import NotificationPreferenceModel
from ..enums import DigestFrequency, Frequency
from ..errors import ValidationError
from ..primitives import Clock, as_utc, enum_value, generate_ulid, resolve_timezone, utc_now

logger = structlog.get_logger()

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

UPDATABLE_FIELDS = {
    "in_app_enabled",
    "email_enabled",
    "push_enabled",
    "digest_frequency",
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
    "categories",
}


def parse_hhmm(value: str) -> int:
    """Convert "HH:MM" to minutes after midnight."""
    match = _HHMM.match(value or "")
    if not match:
        raise ValidationError(f"Invalid time '{value}'; expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


@dataclass(frozen=True)
class QuietHoursStatus:
    in_quiet_hours: bool
    # UTC instant the current quiet window ends; None outside quiet hours
    next_active_time: Optional[datetime] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: str = "UTC"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_quiet_hours": self.in_quiet_hours,
            "next_active_time": (
                self.next_active_time.isoformat() if self.next_active_time else None
            ),
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
            "timezone": self.timezone,
        }


def quiet_window(
    start: Optional[str],
    end: Optional[str],
    tz_name: str,
    now: datetime,
) -> Tuple[bool, Optional[datetime]]:
    """Evaluate a daily quiet window at ``now``.

    ``start > end`` wraps midnight (22:00-08:00); ``start == end`` or a
    missing bound means no quiet hours.

    Returns:
        (in quiet hours, UTC end of the current window or None)
    """
    if not start or not end:
        return False, None
    start_min = parse_hhmm(start)
    end_min = parse_hhmm(end)
    if start_min == end_min:
        return False, None

    local = as_utc(now).astimezone(resolve_timezone(tz_name))
    minutes = local.hour * 60 + local.minute

    if start_min < end_min:
        inside = start_min <= minutes < end_min
    else:
        inside = minutes >= start_min or minutes < end_min
    if not inside:
        return False, None

    window_end = local.replace(
        hour=end_min // 60, minute=end_min % 60, second=0, microsecond=0
    )
    if window_end <= local:
        window_end = window_end + timedelta(days=1)
    return True, as_utc(window_end)


class PreferenceEvaluator:
    """Reads and evaluates per-user notification preferences."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def defaults(self, user_id: str) -> NotificationPreferenceModel:
        """An unsaved preference row holding the configured defaults."""
        return NotificationPreferenceModel(
            id=None,
            user_id=user_id,
            in_app_enabled=True,
            email_enabled=True,
            push_enabled=False,
            digest_frequency=DigestFrequency.DAILY.value,
            quiet_hours_start=self.settings.default_quiet_hours_start,
            quiet_hours_end=self.settings.default_quiet_hours_end,
            timezone=self.settings.default_timezone,
            categories={},
        )

    def get_preferences(self, user_id: str) -> NotificationPreferenceModel:
        stored = self._stored(user_id)
        return stored if stored is not None else self.defaults(user_id)

    def update_preferences(self, user_id: str, **changes: Any) -> NotificationPreferenceModel:
        """Validate and upsert preference fields."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown preference fields: {', '.join(sorted(unknown))}")
        cleaned = self._validate(changes)

        for _ in range(2):
            prefs = self._stored(user_id)
            if prefs is None:
                prefs = self.defaults(user_id)
                prefs.id = generate_ulid()
                self.db.add(prefs)
            for field, value in cleaned.items():
                setattr(prefs, field, value)
            prefs.updated_at = self.clock()
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                continue
            self.db.refresh(prefs)
            logger.info("preferences_updated", user_id=user_id, fields=sorted(cleaned))
            return prefs

        raise ValidationError("Could not store preferences; please retry")

    def update_category_preference(
        self,
        user_id: str,
        category_id: str,
        enabled: bool = True,
        frequency: Optional[Any] = None,
    ) -> NotificationPreferenceModel:
        """Set the override for one category."""
        categories = dict(self.get_preferences(user_id).categories or {})
        override: Dict[str, Any] = {"enabled": enabled}
        if frequency is not None:
            override["frequency"] = enum_value(frequency)
        categories[category_id] = override
        return self.update_preferences(user_id, categories=categories)

    def reset_to_defaults(self, user_id: str) -> NotificationPreferenceModel:
        defaults = self.defaults(user_id)
        return self.update_preferences(
            user_id,
            **{field: getattr(defaults, field) for field in UPDATABLE_FIELDS},
        )

    def enabled_channels(self, user_id: str) -> List[str]:
        return self.get_preferences(user_id).enabled_channels()

    def get_quiet_hours_status(
        self, user_id: str, now: Optional[datetime] = None
    ) -> QuietHoursStatus:
        prefs = self.get_preferences(user_id)
        inside, next_active = quiet_window(
            prefs.quiet_hours_start,
            prefs.quiet_hours_end,
            prefs.timezone,
            now or self.clock(),
        )
        return QuietHoursStatus(
            in_quiet_hours=inside,
            next_active_time=next_active,
            quiet_hours_start=prefs.quiet_hours_start,
            quiet_hours_end=prefs.quiet_hours_end,
            timezone=prefs.timezone,
        )

    def get_effective_frequency(
        self,
        user_id: str,
        category: Optional[str],
        subscription_frequency: Any,
    ) -> Optional[str]:
        """Frequency to use for content in ``category``.

        A per-category override wins over the subscription's frequency.

        Returns:
            The frequency, or None when the user disabled the category
        """
        prefs = self.get_preferences(user_id)
        override = (prefs.categories or {}).get(category) if category else None
        if override:
            if override.get("enabled") is False:
                return None
            if override.get("frequency"):
                return override["frequency"]
        return enum_value(subscription_frequency)

    def wants_digests(self, user_id: str) -> bool:
        return self.get_preferences(user_id).digest_frequency != DigestFrequency.NONE.value

    def _stored(self, user_id: str) -> Optional[NotificationPreferenceModel]:
        return (
            self.db.query(NotificationPreferenceModel)
            .filter(NotificationPreferenceModel.user_id == user_id)
            .first()
        )

    def _validate(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = dict(changes)
        if "digest_frequency" in cleaned:
            try:
                cleaned["digest_frequency"] = DigestFrequency(
                    enum_value(cleaned["digest_frequency"])
                ).value
            except ValueError:
                raise ValidationError(
                    f"Invalid digest_frequency '{cleaned['digest_frequency']}'"
                ) from None
        for field in ("quiet_hours_start", "quiet_hours_end"):
            if cleaned.get(field) is not None:
                parse_hhmm(cleaned[field])
        if "timezone" in cleaned:
            resolve_timezone(cleaned["timezone"])
        if "categories" in cleaned:
            cleaned["categories"] = self._validate_categories(cleaned["categories"])
        for field in ("in_app_enabled", "email_enabled", "push_enabled"):
            if field in cleaned and not isinstance(cleaned[field], bool):
                raise ValidationError(f"{field} must be a boolean")
        return cleaned

    @staticmethod
    def _validate_categories(categories: Any) -> Dict[str, Dict[str, Any]]:
        if not isinstance(categories, dict):
            raise ValidationError("categories must be a mapping")
        result = {}
        for category_id, override in categories.items():
            if not isinstance(override, dict):
                raise ValidationError(f"Override for category '{category_id}' must be a mapping")
            entry: Dict[str, Any] = {"enabled": bool(override.get("enabled", True))}
            if override.get("frequency") is not None:
                try:
                    entry["frequency"] = Frequency(enum_value(override["frequency"])).value
                except ValueError:
                    raise ValidationError(
                        f"Invalid frequency for category '{category_id}'"
                    ) from None
            result[str(category_id)] = entry
        return result
