from typing import Optional

from loguru import logger


class StabilityDetector:
    """Decides when an incrementally written metric has stopped moving.

    A reading counts toward the stable streak when it is positive, above the
    seeded ``baseline`` and not lower than the previous reading. A drop
    starts a new window at the dropped reading; a zero (or a reading at or
    below the baseline) clears the streak entirely.
    """

    def __init__(self, required_stable_reads: int = 1, baseline: float = 0) -> None:
        if required_stable_reads < 1:
            raise ValueError("required_stable_reads must be at least 1")
        self.required_stable_reads = required_stable_reads
        self.baseline = max(baseline or 0, 0)
        self.last_observed_metric: float = self.baseline
        self.stable_streak = 0
        self.logger = logger

    def record(self, metric: Optional[float]) -> bool:
        """Feed one reading and return whether the window is now settled."""
        value = metric or 0
        if value <= 0 or value <= self.baseline:
            self.stable_streak = 0
        elif self.stable_streak == 0 or value >= self.last_observed_metric:
            self.stable_streak += 1
        else:
            self.logger.debug(
                f"Metric dropped from {self.last_observed_metric} to {value}, restarting window"
            )
            self.stable_streak = 1
        self.last_observed_metric = value
        return self.is_settled()

    def reset(self) -> None:
        """Clear the streak after a failed read; the last metric is kept."""
        self.stable_streak = 0

    def is_settled(self) -> bool:
        return (
            self.stable_streak >= self.required_stable_reads
            and self.last_observed_metric > 0
            and self.last_observed_metric > self.baseline
        )
