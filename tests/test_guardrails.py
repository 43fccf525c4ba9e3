from __future__ import annotations

from datetime import datetime, timezone

import pytest

from inboxguard.core.guardrails import (
    BusinessHours,
    GuardrailSettings,
    GuardrailSettingsStore,
    apply_settings_patch,
    create_default_settings,
)
from inboxguard.services.errors import ErrorCode, SettingsError


def test_defaults_are_conservative():
    settings = create_default_settings()
    assert settings.enable_auto_send is False
    assert settings.business_hours_only is True
    assert "complaint" in settings.never_auto_send_categories
    assert settings.require_approval_for_first_n > 0


def test_patch_merges_and_returns_full_settings():
    store = GuardrailSettingsStore()
    updated = store.update("org_1", {"daily_send_cap": 5, "auto_send_allowed_categories": ["pricing", " faq "]})
    assert updated.daily_send_cap == 5
    assert updated.auto_send_allowed_categories == frozenset({"pricing", "faq"})
    # Untouched fields keep their defaults.
    assert updated.auto_send_min_confidence == create_default_settings().auto_send_min_confidence
    assert store.get("org_1") is updated


def test_tenants_are_isolated():
    store = GuardrailSettingsStore()
    store.update("org_1", {"automation_paused": True})
    assert store.get_or_create("org_2").automation_paused is False


@pytest.mark.parametrize(
    "patch,field",
    [
        ({"auto_send_min_confidence": 101}, "auto_send_min_confidence"),
        ({"daily_send_cap": -1}, "daily_send_cap"),
        ({"daily_send_cap": 2.5}, "daily_send_cap"),
        ({"require_approval_for_first_n": -3}, "require_approval_for_first_n"),
        ({"enable_auto_send": "yes"}, "enable_auto_send"),
        ({"never_auto_send_categories": "spam"}, "never_auto_send_categories"),
        ({"stale_threshold_minutes": 0}, "stale_threshold_minutes"),
        ({"unknown_flag": True}, "unknown_flag"),
    ],
)
def test_invalid_patch_is_rejected(patch, field):
    store = GuardrailSettingsStore()
    before = store.get_or_create("org_1")
    with pytest.raises(SettingsError) as exc_info:
        store.update("org_1", patch)
    assert exc_info.value.code == ErrorCode.INVALID_SETTINGS
    assert exc_info.value.context["field"] == field
    assert store.get("org_1") is before


def test_business_hours_validation():
    with pytest.raises(SettingsError):
        BusinessHours(timezone="Mars/Olympus")
    with pytest.raises(SettingsError):
        BusinessHours(timezone="UTC", windows={"mon": (600, 500)})
    with pytest.raises(SettingsError):
        BusinessHours(timezone="UTC", windows={"funday": (0, 60)})


def test_business_hours_patch_from_dict():
    settings = apply_settings_patch(
        GuardrailSettings(),
        {"business_hours": {"timezone": "UTC", "windows": {"Monday": [540, 1020], "tue": None}}},
    )
    assert settings.business_hours.windows == {"mon": (540, 1020)}
    assert settings.to_dict()["business_hours"] == {"timezone": "UTC", "windows": {"mon": [540, 1020]}}


def test_business_hours_respect_timezone():
    hours = BusinessHours(timezone="Pacific/Auckland", windows={"tue": (9 * 60, 17 * 60)})
    # Monday 22:00 UTC is Tuesday morning in Auckland.
    assert hours.is_open(datetime(2026, 3, 2, 22, 0, tzinfo=timezone.utc))
    assert not hours.is_open(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


def test_empty_business_hours_are_always_open():
    assert BusinessHours(timezone="UTC").is_open(datetime(2026, 3, 8, 3, 0, tzinfo=timezone.utc))


def test_from_dict_round_trips_to_dict():
    settings = GuardrailSettings.from_dict({"daily_send_cap": 3, "automation_paused": True})
    assert GuardrailSettings.from_dict(settings.to_dict()) == settings
