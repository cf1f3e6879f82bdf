"""
RetryPolicy -- bounded retry of a single unit cycle.

Responsibility:
    Decides whether a failed unit cycle may be attempted again and how long
    to wait first.  Replaces ad hoc counters in the sequencing loop with one
    value object that is testable in isolation.

Architecture position:
    Kernel > Domain -- pure value object, zero I/O.

Invariants enforced:
    - max_attempts >= 1 (the first attempt always happens).
    - Never retries a non-retryable DeviceError (DeviceNotReadyError).
    - Ambiguous failures are retried by default; ``retry_ambiguous=False``
      abandons the slot after the first ambiguous attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

from dispense_kernel.exceptions import DeviceError


@dataclass(frozen=True)
class RetryPolicy:
    """
    Contract:
        ``max_attempts`` counts the first try: the default of 2 means one
        retry of the same unit.

    Guarantees:
        - ``delay_before(n)`` is 0 for the first attempt and grows by
          ``backoff_multiplier`` for every later one.
    """

    max_attempts: int = 2
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 1.0
    retry_ambiguous: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")
        if self.backoff_multiplier < 1:
            raise ValueError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)

    def should_retry(self, attempt_number: int, error: DeviceError) -> bool:
        """Whether attempt ``attempt_number`` (1-based) may be followed by another."""
        if attempt_number >= self.max_attempts:
            return False
        if not error.retryable:
            return False
        if error.ambiguous and not self.retry_ambiguous:
            return False
        return True

    def delay_before(self, attempt_number: int) -> float:
        """Seconds to wait before attempt ``attempt_number`` (1-based)."""
        if attempt_number <= 1:
            return 0.0
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt_number - 2))
