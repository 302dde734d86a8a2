from __future__ import annotations

from enum import Enum
from typing import Iterable


class LanternError(Exception):
    pass


class SettingsValidationError(LanternError, ValueError):
    pass


class InvalidTraceError(LanternError):
    """The capture lacks a marker every metric needs (navigation start, FCP, ...)."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        msg = code if detail is None else f"{code}: {detail}"
        super().__init__(msg)


class GraphConstructionError(LanternError):
    def __init__(self, message: str, *, node_ids: Iterable[str] = ()) -> None:
        self.node_ids = tuple(node_ids)
        if self.node_ids:
            message = f"{message} (nodes: {', '.join(self.node_ids)})"
        super().__init__(message)


class UnreachableNodeError(LanternError):
    def __init__(self, node_ids: Iterable[str], *, label: str | None = None) -> None:
        self.node_ids = tuple(node_ids)
        self.label = label
        where = f" during {label} simulation" if label else ""
        super().__init__(
            f"{len(self.node_ids)} node(s) can never start{where}: "
            + ", ".join(self.node_ids)
        )


class QuietPeriodErrorKind(str, Enum):
    NO_CPU_IDLE_PERIOD = "NO_CPU_IDLE_PERIOD"
    NO_NETWORK_IDLE_PERIOD = "NO_NETWORK_IDLE_PERIOD"
    NO_IDLE_PERIOD = "NO_IDLE_PERIOD"


class NoQuietPeriodError(LanternError):
    """No joint CPU/network quiet window; callers report the metric as inapplicable."""

    def __init__(
        self,
        kind: QuietPeriodErrorKind,
        *,
        reference_ms: float,
        trace_end_ms: float,
    ) -> None:
        self.kind = kind
        self.reference_ms = reference_ms
        self.trace_end_ms = trace_end_ms
        super().__init__(
            f"{kind.value} (reference={reference_ms:.1f}ms, trace_end={trace_end_ms:.1f}ms)"
        )
