from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture(scope="session", autouse=True)
def _add_repo_root_to_syspath() -> None:
    """Make the local package importable when running tests from `tests/`.

    Some Windows/PyTest invocations end up with `tests/` as the import root.
    Ensure the repo root is on `sys.path` so `import lantern` works.
    """

    root = Path(__file__).resolve().parents[1]
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


def _load(name: str) -> Any:
    return json.loads((FIXTURES / name).read_text(encoding="utf-8"))


@pytest.fixture()
def progressive_app_trace() -> Any:
    return _load("progressive-app.trace.json")


@pytest.fixture()
def progressive_app_devtools_log() -> list[dict[str, Any]]:
    return _load("progressive-app.devtools.log.json")


@pytest.fixture()
def progressive_app_capture(progressive_app_trace: Any, progressive_app_devtools_log: Any):
    from lantern.capture import normalize

    return normalize(progressive_app_trace, progressive_app_devtools_log)
