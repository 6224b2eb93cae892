"""
Core types for settle.

Re-exports from kungfu + the clock alias every component takes.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

# Re-export from kungfu
from kungfu import Result, Ok, Error, LazyCoroResult

# ═══════════════════════════════════════════════════════════════════════════════
# Clock
# ═══════════════════════════════════════════════════════════════════════════════

type Clock = Callable[[], datetime]
"""Source of "now". Naive local time, same as the stored columns."""


def system_clock() -> datetime:
    return datetime.now()


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    # Re-exports from kungfu
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    # Clock
    "Clock",
    "system_clock",
)
