"""
Retry backoff policy.
"""

from dataclasses import dataclass

from mailqueue.config import Settings

STRATEGIES = ("exponential", "linear", "fixed")

# Caps the exponent so huge attempt counts don't build huge integers
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay before the next attempt as a function of attempts made so far.

    Every strategy is non-decreasing in `attempts` and clamped to
    `max_delay_ms`.
    """

    strategy: str = "exponential"
    base_delay_ms: int = 15_000
    max_delay_ms: int = 5 * 60_000

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unknown backoff strategy: {self.strategy}")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must not be negative")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")

    def delay_ms(self, attempts: int) -> int:
        """
        Compute the retry delay.

        Args:
            attempts: Attempts made so far, including the one that just failed.

        Returns:
            Delay in milliseconds.
        """
        attempt = max(1, attempts)
        if self.strategy == "fixed":
            delay = self.base_delay_ms
        elif self.strategy == "linear":
            delay = self.base_delay_ms * attempt
        else:
            delay = self.base_delay_ms * 2 ** min(attempt - 1, _MAX_EXPONENT)
        return min(delay, self.max_delay_ms)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            strategy=settings.retry_backoff_strategy,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )
