"""Engine configuration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunables shared by every session of an engine.

    Attributes:
        lock_wait_timeout: Seconds a blocked lock request waits before the
            transaction is aborted with LockTimeoutError.
        deadlock_check_interval: Seconds between wait-for graph scans by the
            background detector. 0 disables the detector thread and runs the
            scan inline each time a transaction blocks.
    """

    lock_wait_timeout: float = 5.0
    deadlock_check_interval: float = 0.05

    def __post_init__(self) -> None:
        if self.lock_wait_timeout <= 0:
            raise ValueError("lock_wait_timeout must be positive")
        if self.deadlock_check_interval < 0:
            raise ValueError("deadlock_check_interval must not be negative")
