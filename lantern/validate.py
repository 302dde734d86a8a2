from __future__ import annotations

import math

from lantern.errors import SettingsValidationError
from lantern.settings import PRESETS, THROTTLING_METHODS, Settings


def validate_settings(settings: Settings) -> None:
    if settings.throttling_method not in THROTTLING_METHODS:
        raise SettingsValidationError(
            f"Unsupported throttling_method: {settings.throttling_method!r} "
            f"(expected one of {', '.join(THROTTLING_METHODS)})"
        )

    if settings.form_factor not in PRESETS:
        raise SettingsValidationError(
            f"Unsupported form_factor: {settings.form_factor!r} "
            f"(expected one of {', '.join(sorted(PRESETS))})"
        )

    if settings.max_connections_per_origin < 1:
        raise SettingsValidationError(
            "max_connections_per_origin must be >= 1 "
            f"(got {settings.max_connections_per_origin})"
        )

    t = settings.throttling
    for name, value in (
        ("rtt_ms", t.rtt_ms),
        ("throughput_kbps", t.throughput_kbps),
        ("cpu_slowdown_multiplier", t.cpu_slowdown_multiplier),
    ):
        if math.isnan(value) or value < 0:
            raise SettingsValidationError(f"throttling {name} must be >= 0 (got {value})")
    if t.throughput_kbps == 0:
        raise SettingsValidationError("throttling throughput_kbps must be > 0")
    if t.cpu_slowdown_multiplier == 0:
        raise SettingsValidationError("throttling cpu_slowdown_multiplier must be > 0")
