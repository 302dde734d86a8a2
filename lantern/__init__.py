"""Lantern: page-load simulation from a captured trace and network log.

The engine builds a dependency graph of network requests and main-thread
tasks, then replays it under a throttling profile to estimate paint and
interactivity metrics.

Run from source:

    python -m lantern compute --trace t.json --devtools-log d.json --out-summary s.json
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
