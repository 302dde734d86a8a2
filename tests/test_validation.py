from __future__ import annotations

import math

import pytest

from lantern.errors import SettingsValidationError
from lantern.executors import ObservedExecutor, SimulatedExecutor, default_executor_for_settings
from lantern.settings import DESKTOP_DENSE_4G, MOBILE_SLOW_4G, Settings, ThrottlingProfile
from lantern.validate import validate_settings


def test_defaults_simulate_a_slow_mobile_device() -> None:
    settings = Settings()
    validate_settings(settings)
    assert settings.throttling_method == "simulate"
    assert settings.throttling is MOBILE_SLOW_4G
    assert settings.max_connections_per_origin == 6
    assert hash(settings) == hash(Settings())


def test_rejects_unknown_throttling_method() -> None:
    with pytest.raises(SettingsValidationError, match="throttling_method"):
        validate_settings(Settings(throttling_method="devtools"))


def test_rejects_unknown_form_factor() -> None:
    with pytest.raises(SettingsValidationError, match="form_factor"):
        validate_settings(Settings(form_factor="watch"))


def test_rejects_non_positive_connection_limit() -> None:
    with pytest.raises(SettingsValidationError, match="max_connections_per_origin"):
        validate_settings(Settings(max_connections_per_origin=0))


@pytest.mark.parametrize(
    "profile",
    [
        ThrottlingProfile(rtt_ms=-1, throughput_kbps=1000, cpu_slowdown_multiplier=1),
        ThrottlingProfile(rtt_ms=100, throughput_kbps=0, cpu_slowdown_multiplier=1),
        ThrottlingProfile(rtt_ms=100, throughput_kbps=1000, cpu_slowdown_multiplier=0),
        ThrottlingProfile(rtt_ms=math.nan, throughput_kbps=1000, cpu_slowdown_multiplier=1),
    ],
)
def test_rejects_bad_throttling_profile(profile: ThrottlingProfile) -> None:
    with pytest.raises(SettingsValidationError, match="throttling"):
        validate_settings(Settings(throttling=profile))


def test_settings_validation_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        validate_settings(Settings(throttling_method="nope"))


def test_from_json_uses_form_factor_preset() -> None:
    settings = Settings.from_json({"form_factor": "desktop"})
    assert settings.throttling == DESKTOP_DENSE_4G


def test_from_json_accepts_custom_profile() -> None:
    settings = Settings.from_json(
        {
            "throttling_method": "provided",
            "throttling": {"rttMs": 40, "throughputKbps": 10240, "cpuSlowdownMultiplier": 2},
            "max_connections_per_origin": 4,
        }
    )
    validate_settings(settings)
    assert settings.throttling == ThrottlingProfile(40, 10240, 2)
    assert settings.max_connections_per_origin == 4


def test_from_json_rejects_unknown_preset() -> None:
    with pytest.raises(ValueError, match="unknown throttling preset"):
        Settings.from_json({"throttling": "3g"})


def test_overrides_switch_preset_with_form_factor() -> None:
    settings = Settings().with_overrides(form_factor="desktop", max_connections_per_origin=2)
    assert settings.throttling is DESKTOP_DENSE_4G
    assert settings.max_connections_per_origin == 2
    assert Settings().with_overrides() == Settings()


def test_executor_is_chosen_by_throttling_method() -> None:
    assert isinstance(default_executor_for_settings(Settings()), SimulatedExecutor)
    assert isinstance(
        default_executor_for_settings(Settings(throttling_method="provided")), ObservedExecutor
    )
    with pytest.raises(ValueError, match="Unsupported throttling_method"):
        default_executor_for_settings(Settings(throttling_method="devtools"))


@pytest.mark.parametrize(
    "obj, message",
    [
        ({"throttling": {"throughputKbps": 1000}}, "throttling.rtt_ms is required"),
        ({"throttling": {"rttMs": "fast", "throughputKbps": 1000}}, "throttling.rtt_ms must be a number"),
        ({"throttling": {"rttMs": 40, "throughputKbps": [1]}}, "throttling.throughput_kbps"),
        ({"throttling": 5}, "preset name or an object"),
        ({"max_connections_per_origin": None}, "max_connections_per_origin is required"),
        (["mobile"], "JSON object"),
    ],
)
def test_from_json_reports_malformed_input_as_validation_error(obj: object, message: str) -> None:
    with pytest.raises(SettingsValidationError, match=message):
        Settings.from_json(obj)
