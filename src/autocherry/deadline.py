from __future__ import annotations

from dataclasses import dataclass, field
import time


class DeadlineExceededError(RuntimeError):
    pass


@dataclass(frozen=True)
class Deadline:
    expires_at: float
    timeout_seconds: float = field(compare=False)

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(expires_at=time.monotonic() + seconds, timeout_seconds=seconds)

    @classmethod
    def unbounded(cls) -> Deadline:
        return cls(expires_at=float("inf"), timeout_seconds=float("inf"))

    def remaining(self) -> float | None:
        """Seconds left, or None when unbounded. Never negative."""
        if self.expires_at == float("inf"):
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self) -> None:
        if self.expired():
            raise DeadlineExceededError(f"Deadline of {self.timeout_seconds}s exceeded")
