from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

RESTART_DELAYS_SECONDS: tuple[float, ...] = (1.0, 2.0, 5.0, 5.0, 5.0)
MAX_RESTART_ATTEMPTS = 5


@dataclass(frozen=True)
class RestartDecision:
    restart: bool
    delay_seconds: float = 0.0
    attempt: int = 0
    reason: Optional[str] = None


class RestartPolicy:
    """
    Fixed backoff schedule with an attempt ceiling.

    The schedule has no jitter; only one supervisor restarts a given service.
    """

    def __init__(
        self,
        delays: Sequence[float] = RESTART_DELAYS_SECONDS,
        *,
        max_attempts: int = MAX_RESTART_ATTEMPTS,
    ) -> None:
        if not delays:
            raise ValueError("restart delays must not be empty")
        self.delays = tuple(float(delay) for delay in delays)
        self.max_attempts = max_attempts

    def delay_for(self, attempt: int) -> float:
        return self.delays[min(max(attempt, 0), len(self.delays) - 1)]

    def decide(self, *, attempt: int, auto_restart: bool, exit_code: Optional[int]) -> RestartDecision:
        """``attempt`` is the number of restarts already made since the last healthy start."""
        if not auto_restart:
            return RestartDecision(
                restart=False,
                attempt=attempt,
                reason=f"Pocket TTS server exited unexpectedly (code {exit_code}).",
            )
        if attempt >= self.max_attempts:
            return RestartDecision(
                restart=False,
                attempt=attempt,
                reason=(
                    f"Pocket TTS server exited unexpectedly (code {exit_code}); "
                    f"gave up after {attempt} restart attempts."
                ),
            )
        return RestartDecision(
            restart=True,
            delay_seconds=self.delay_for(attempt),
            attempt=attempt + 1,
        )
