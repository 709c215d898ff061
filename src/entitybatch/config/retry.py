"""Retry settings for transient storage failures."""

from __future__ import annotations

from dataclasses import dataclass

from tenacity import stop_after_attempt, wait_exponential


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0

    def stop(self) -> stop_after_attempt:
        return stop_after_attempt(self.max_retries + 1)

    def wait(self) -> wait_exponential:
        """Backoff of ``initial_delay * backoff_multiplier ** (n - 1)`` capped at ``max_delay``."""

        return wait_exponential(
            multiplier=self.initial_delay,
            max=self.max_delay,
            exp_base=self.backoff_multiplier,
        )
