"""
Guardrail Settings

Per-tenant policy for automated handling of inbound items:
- Auto-send allow / deny category lists (deny always wins)
- Minimum confidence (0-100 scale)
- Daily send cap and approval runway
- Business-hours-only sending
- Global pause switch

Settings are created with tenant defaults at onboarding and mutated only
through GuardrailSettingsStore.update().
"""

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from inboxguard.services.errors import SettingsError

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
MINUTES_PER_DAY = 1440

DEFAULT_ALLOWED_CATEGORIES = frozenset(
    {"booking_request", "reschedule", "cancellation", "pricing", "faq", "admin"}
)
DEFAULT_NEVER_SEND_CATEGORIES = frozenset({"complaint", "spam"})
DEFAULT_TIMEZONE = "Pacific/Auckland"


@dataclass(frozen=True)
class BusinessHours:
    """
    Opening windows per weekday, in minutes since local midnight.

    Example:
        {"mon": (540, 1020)} -> Monday 09:00-17:00 in `timezone`

    No windows at all means "always open"; a weekday missing from a
    non-empty table is closed.
    """
    timezone: str = DEFAULT_TIMEZONE
    windows: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    def __post_init__(self):
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise SettingsError("business_hours.timezone", f"Unknown timezone: {self.timezone}")
        for day, window in self.windows.items():
            if day not in WEEKDAYS:
                raise SettingsError("business_hours.windows", f"Unknown weekday: {day}")
            if len(window) != 2:
                raise SettingsError("business_hours.windows", f"{day}: expected (open, close)")
            open_minute, close_minute = window
            if not (0 <= open_minute <= close_minute <= MINUTES_PER_DAY):
                raise SettingsError("business_hours.windows", f"{day}: open must be <= close within 0-1440")

    def is_open(self, at: Optional[datetime] = None) -> bool:
        if not self.windows:
            return True
        at = at or datetime.now(timezone.utc)
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        local = at.astimezone(ZoneInfo(self.timezone))
        window = self.windows.get(WEEKDAYS[local.weekday()])
        if not window:
            return False
        minutes = local.hour * 60 + local.minute
        return window[0] <= minutes <= window[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timezone": self.timezone,
            "windows": {day: list(window) for day, window in self.windows.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BusinessHours":
        data = data or {}
        windows: Dict[str, Tuple[int, int]] = {}
        for day, window in (data.get("windows") or {}).items():
            if window is None:
                continue
            try:
                open_minute, close_minute = (int(v) for v in window)
            except (TypeError, ValueError):
                raise SettingsError("business_hours.windows", f"{day}: expected two minute values")
            windows[str(day).lower()[:3]] = (open_minute, close_minute)
        return cls(timezone=data.get("timezone") or DEFAULT_TIMEZONE, windows=windows)


@dataclass(frozen=True)
class GuardrailSettings:
    enable_auto_draft: bool = True
    enable_auto_send: bool = False
    auto_send_allowed_categories: frozenset = DEFAULT_ALLOWED_CATEGORIES
    never_auto_send_categories: frozenset = DEFAULT_NEVER_SEND_CATEGORIES
    auto_send_min_confidence: float = 92.0  # 0-100 scale
    business_hours_only: bool = True
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    daily_send_cap: int = 40  # 0 = automation may never send
    require_approval_for_first_n: int = 20
    automation_paused: bool = False
    stale_threshold_minutes: int = 10

    def __post_init__(self):
        if not (0 <= self.auto_send_min_confidence <= 100):
            raise SettingsError("auto_send_min_confidence", "Must be between 0 and 100")
        if self.daily_send_cap < 0:
            raise SettingsError("daily_send_cap", "Must be >= 0")
        if self.require_approval_for_first_n < 0:
            raise SettingsError("require_approval_for_first_n", "Must be >= 0")
        if self.stale_threshold_minutes < 1:
            raise SettingsError("stale_threshold_minutes", "Must be >= 1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enable_auto_draft": self.enable_auto_draft,
            "enable_auto_send": self.enable_auto_send,
            "auto_send_allowed_categories": sorted(self.auto_send_allowed_categories),
            "never_auto_send_categories": sorted(self.never_auto_send_categories),
            "auto_send_min_confidence": self.auto_send_min_confidence,
            "business_hours_only": self.business_hours_only,
            "business_hours": self.business_hours.to_dict(),
            "daily_send_cap": self.daily_send_cap,
            "require_approval_for_first_n": self.require_approval_for_first_n,
            "automation_paused": self.automation_paused,
            "stale_threshold_minutes": self.stale_threshold_minutes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GuardrailSettings":
        return apply_settings_patch(cls(), data or {})


_FIELD_NAMES = {f.name for f in fields(GuardrailSettings)}
_BOOL_FIELDS = {"enable_auto_draft", "enable_auto_send", "business_hours_only", "automation_paused"}
_INT_FIELDS = {"daily_send_cap", "require_approval_for_first_n", "stale_threshold_minutes"}
_CATEGORY_FIELDS = {"auto_send_allowed_categories", "never_auto_send_categories"}


def _coerce_field(name: str, value: Any) -> Any:
    if name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise SettingsError(name, "Must be a boolean")
        return value
    if name in _INT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
            raise SettingsError(name, "Must be a whole number")
        return int(value)
    if name == "auto_send_min_confidence":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SettingsError(name, "Must be a number")
        return float(value)
    if name in _CATEGORY_FIELDS:
        if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
            raise SettingsError(name, "Must be a list of category names")
        return frozenset(str(v).strip() for v in value if str(v).strip())
    if name == "business_hours":
        if isinstance(value, BusinessHours):
            return value
        if not isinstance(value, dict):
            raise SettingsError(name, "Must be an object with timezone and windows")
        return BusinessHours.from_dict(value)
    return value


def apply_settings_patch(current: GuardrailSettings, patch: Dict[str, Any]) -> GuardrailSettings:
    """Merge a partial patch onto settings, validating every field."""
    unknown = sorted(set(patch) - _FIELD_NAMES)
    if unknown:
        raise SettingsError(unknown[0], "Unknown setting")
    changes = {name: _coerce_field(name, value) for name, value in patch.items()}
    return replace(current, **changes)


def create_default_settings() -> GuardrailSettings:
    """Tenant defaults applied at onboarding."""
    return GuardrailSettings()


# ==================== STORAGE ====================

class GuardrailSettingsStore:
    """
    One GuardrailSettings record per tenant.

    In-memory; the host application persists the resolved settings through
    the channel adapter.
    """

    def __init__(self) -> None:
        self._settings: Dict[str, GuardrailSettings] = {}

    def get(self, tenant_id: str) -> Optional[GuardrailSettings]:
        return self._settings.get(tenant_id)

    def get_or_create(self, tenant_id: str) -> GuardrailSettings:
        settings = self._settings.get(tenant_id)
        if settings is None:
            settings = create_default_settings()
            self._settings[tenant_id] = settings
            logger.info(f"Created default guardrail settings for tenant {tenant_id}")
        return settings

    def update(self, tenant_id: str, patch: Dict[str, Any]) -> GuardrailSettings:
        """The settings-update operation: partial patch in, full settings out."""
        current = self.get_or_create(tenant_id)
        updated = apply_settings_patch(current, patch)
        self._settings[tenant_id] = updated
        logger.info(f"Updated guardrail settings for tenant {tenant_id}: {sorted(patch)}")
        return updated

    def delete(self, tenant_id: str) -> None:
        if tenant_id in self._settings:
            del self._settings[tenant_id]
            logger.info(f"Deleted guardrail settings for tenant {tenant_id}")


settings_store = GuardrailSettingsStore()
