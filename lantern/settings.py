from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from lantern.errors import SettingsValidationError

DEFAULT_MAX_CONNECTIONS_PER_ORIGIN = 6


def _number(obj: dict[str, Any], field_name: str, *keys: str, default: Any = None) -> float:
    value = default
    for key in keys:
        if key in obj:
            value = obj[key]
            break
    if value is None:
        raise SettingsValidationError(f"{field_name} is required")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise SettingsValidationError(f"{field_name} must be a number, got {value!r}") from e


@dataclass(frozen=True)
class ThrottlingProfile:
    rtt_ms: float
    throughput_kbps: float
    cpu_slowdown_multiplier: float

    @property
    def throughput_bps(self) -> float:
        return self.throughput_kbps * 1024

    @staticmethod
    def from_json(obj: dict[str, Any]) -> "ThrottlingProfile":
        return ThrottlingProfile(
            rtt_ms=_number(obj, "throttling.rtt_ms", "rtt_ms", "rttMs"),
            throughput_kbps=_number(
                obj, "throttling.throughput_kbps", "throughput_kbps", "throughputKbps"
            ),
            cpu_slowdown_multiplier=_number(
                obj,
                "throttling.cpu_slowdown_multiplier",
                "cpu_slowdown_multiplier",
                "cpuSlowdownMultiplier",
                default=1,
            ),
        )


# Slow 4G as seen from a mid-tier phone.
MOBILE_SLOW_4G = ThrottlingProfile(rtt_ms=150, throughput_kbps=1.6 * 1024, cpu_slowdown_multiplier=4)
DESKTOP_DENSE_4G = ThrottlingProfile(rtt_ms=40, throughput_kbps=10 * 1024, cpu_slowdown_multiplier=1)

PRESETS = {"mobile": MOBILE_SLOW_4G, "desktop": DESKTOP_DENSE_4G}
THROTTLING_METHODS = ("simulate", "provided")


@dataclass(frozen=True)
class Settings:
    throttling_method: str = "simulate"
    form_factor: str = "mobile"
    throttling: ThrottlingProfile = field(default=MOBILE_SLOW_4G)
    max_connections_per_origin: int = DEFAULT_MAX_CONNECTIONS_PER_ORIGIN

    @staticmethod
    def from_json(obj: dict[str, Any]) -> "Settings":
        if not isinstance(obj, dict):
            raise SettingsValidationError("settings must be a JSON object")
        form_factor = str(obj.get("form_factor", "mobile"))
        raw_throttling = obj.get("throttling")
        if raw_throttling is None:
            throttling = PRESETS.get(form_factor, MOBILE_SLOW_4G)
        elif isinstance(raw_throttling, str):
            if raw_throttling not in PRESETS:
                raise SettingsValidationError(
                    f"unknown throttling preset {raw_throttling!r} "
                    f"(expected one of {sorted(PRESETS)})"
                )
            throttling = PRESETS[raw_throttling]
        elif isinstance(raw_throttling, dict):
            throttling = ThrottlingProfile.from_json(raw_throttling)
        else:
            raise SettingsValidationError("throttling must be a preset name or an object")

        connections = _number(
            obj,
            "max_connections_per_origin",
            "max_connections_per_origin",
            default=DEFAULT_MAX_CONNECTIONS_PER_ORIGIN,
        )
        return Settings(
            throttling_method=str(obj.get("throttling_method", "simulate")),
            form_factor=form_factor,
            throttling=throttling,
            max_connections_per_origin=int(connections),
        )

    def with_overrides(
        self,
        *,
        throttling_method: str | None = None,
        form_factor: str | None = None,
        max_connections_per_origin: int | None = None,
    ) -> "Settings":
        throttling = self.throttling
        if form_factor is not None and form_factor != self.form_factor:
            throttling = PRESETS.get(form_factor, throttling)
        return Settings(
            throttling_method=throttling_method or self.throttling_method,
            form_factor=form_factor or self.form_factor,
            throttling=throttling,
            max_connections_per_origin=(
                max_connections_per_origin
                if max_connections_per_origin is not None
                else self.max_connections_per_origin
            ),
        )
