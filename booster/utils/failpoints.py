"""Booster Transfer - Failpoint injection for resilience testing.

Deterministic crash injection at publish boundaries (atomic writes, upload
assembly, export artifact publish). Used to verify that a crash never leaves
a half-written final file behind.

Safety gate: failpoints are only active when BOOSTER_ENABLE_FAILPOINTS=1.
The default is a complete no-op.

Environment variables:
- BOOSTER_ENABLE_FAILPOINTS: "1" enables the failpoint system
- BOOSTER_FAILPOINT: Name of the failpoint to trigger (e.g. "FINALIZE_BEFORE_COMMIT")
- BOOSTER_FAILPOINT_EXIT_CODE: Exit code used when crashing (default: 42)
- BOOSTER_FAILPOINT_ONCE: "1" clears the failpoint after it fires once

Usage:
    from booster.utils.failpoints import maybe_fail

    maybe_fail("ATOMIC_WRITE_AFTER_TMP_WRITE")
"""

from __future__ import annotations

import os

DEFAULT_EXIT_CODE = 42
_PREFIX = "FAILPOINT_"


def _normalize(name: str) -> str:
    name = name.strip().upper()
    if name.startswith(_PREFIX):
        name = name[len(_PREFIX) :]
    return name


def is_failpoint_enabled() -> bool:
    """Return True if BOOSTER_ENABLE_FAILPOINTS=1."""
    return os.environ.get("BOOSTER_ENABLE_FAILPOINTS") == "1"


def get_active_failpoint() -> str | None:
    """Get the armed failpoint name (normalized, no FAILPOINT_ prefix), if any."""
    if not is_failpoint_enabled():
        return None
    target = os.environ.get("BOOSTER_FAILPOINT", "")
    return _normalize(target) if target else None


def maybe_fail(point: str) -> None:
    """Crash the process if `point` is the armed failpoint.

    Uses os._exit() so that finally blocks and atexit handlers do not run,
    which is what a power failure looks like to the code under test.

    Args:
        point: Failpoint name, with or without the FAILPOINT_ prefix.
    """
    active = get_active_failpoint()
    if active is None or active != _normalize(point):
        return

    try:
        exit_code = int(os.environ.get("BOOSTER_FAILPOINT_EXIT_CODE", DEFAULT_EXIT_CODE))
    except ValueError:
        exit_code = DEFAULT_EXIT_CODE

    if os.environ.get("BOOSTER_FAILPOINT_ONCE") == "1":
        # Only affects the current process environment
        os.environ.pop("BOOSTER_FAILPOINT", None)
        os.environ.pop("BOOSTER_FAILPOINT_ONCE", None)

    os._exit(exit_code)
