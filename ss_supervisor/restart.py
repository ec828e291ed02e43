from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

LOGGER = logging.getLogger("SSSupervisor.Restart")


@dataclass(frozen=True)
class RestartPolicy:
    """Backoff and circuit-breaker settings applied between server restarts."""

    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_restarts: int = 10
    window: float = 60.0
    cooldown: float = 60.0
    stable_after: float = 30.0

    def __post_init__(self) -> None:
        if self.initial_delay < 0 or self.max_delay < 0 or self.cooldown < 0:
            raise ValueError("Restart delays must be non-negative.")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be at least 1.")
        if self.max_restarts < 0:
            raise ValueError("max_restarts must be non-negative (0 disables the breaker).")

    @classmethod
    def unthrottled(cls) -> "RestartPolicy":
        """Restart immediately after every exit, with no breaker."""

        return cls(
            initial_delay=0.0,
            multiplier=1.0,
            max_delay=0.0,
            max_restarts=0,
            cooldown=0.0,
        )


class RestartTracker:
    """Compute the delay before the next launch from recent exit history."""

    def __init__(
        self,
        policy: RestartPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy
        self._clock = clock
        self._history: deque[float] = deque()
        self._failures = 0

    @property
    def policy(self) -> RestartPolicy:
        return self._policy

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def next_delay(self, uptime: float | None) -> float:
        """Record a restart and return how long to wait before launching.

        ``uptime`` is how long the previous run lasted, or ``None`` when the
        launch itself failed.
        """

        policy = self._policy
        now = self._clock()

        if uptime is not None and uptime >= policy.stable_after:
            self._failures = 0

        self._history.append(now)
        while self._history and now - self._history[0] > policy.window:
            self._history.popleft()

        if policy.max_restarts and len(self._history) > policy.max_restarts:
            LOGGER.error(
                "Server restarted %s times within %.0fs; pausing restarts for %.1fs.",
                len(self._history),
                policy.window,
                policy.cooldown,
            )
            self._history.clear()
            self._failures = 0
            return policy.cooldown

        delay = min(
            policy.max_delay, policy.initial_delay * policy.multiplier**self._failures
        )
        self._failures += 1
        return delay

    def reset(self) -> None:
        self._history.clear()
        self._failures = 0
