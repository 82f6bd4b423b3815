"""Pure domain helpers shared by every digest package.  ZERO I/O."""

from digest_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
