"""Exponential backoff for transport retries."""


class Backoff:
    """Retry delay that doubles per consecutive failure up to a cap.

    A success resets the delay to the initial value.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 600.0, factor: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.delay = initial
        self.failures = 0

    def next_delay(self) -> float:
        """Return the delay for this failure and advance to the next one."""
        delay = self.delay
        self.failures += 1
        self.delay = min(self.delay * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self.delay = self.initial
        self.failures = 0
