from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ResourceAssumptions:
    """Resource-state bias applied to one simulation run.

    Both estimates share the graph and throttling profile; only these flags
    differ, so the gap between the two results bounds the real value.
    """

    label: str
    # A connection that finished a request stays warm (no handshake, grown cwnd).
    # When false every request negotiates a fresh TCP/TLS connection.
    reuse_warm_connections: bool
    # Once any connection to a host has been used, new ones to it start warm.
    warm_new_connections_after_first_use: bool
    # Fraction of the CPU slowdown multiplier charged to layout/paint tasks.
    layout_task_multiplier: float


OPTIMISTIC = ResourceAssumptions(
    label="optimistic",
    reuse_warm_connections=True,
    warm_new_connections_after_first_use=True,
    layout_task_multiplier=0.5,
)

PESSIMISTIC = ResourceAssumptions(
    label="pessimistic",
    reuse_warm_connections=False,
    warm_new_connections_after_first_use=False,
    layout_task_multiplier=1.0,
)

STRATEGIES = {a.label: a for a in (OPTIMISTIC, PESSIMISTIC)}
