"""
Step retries.

A step whose provider times out or cannot be reached is invoked again, up
to the policy's attempt limit, with a backoff delay between attempts. A
provider that answered with an explicit failure is never invoked twice:
the same input would only be rejected again.

asyncio.CancelledError derives from BaseException, so cancelling a run
interrupts the current attempt (or the sleep between attempts) and
propagates untouched.

Usage:
    policy = RetryPolicy(max_attempts=3, backoff=ExponentialBackoff(base=0.5))
    result = await with_retry(lambda: provider.invoke(payload, ctx), policy, "create")
    if not result.success:
        raise result.final_error
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from conduit.errors import ProviderInvocationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


# =============================================================================
# Backoff
# =============================================================================


class BackoffStrategy(ABC):
    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-indexed)."""


@dataclass(frozen=True)
class NoBackoff(BackoffStrategy):
    def get_delay(self, attempt: int) -> float:
        return 0.0


@dataclass(frozen=True)
class ConstantBackoff(BackoffStrategy):
    delay: float = 1.0

    def get_delay(self, attempt: int) -> float:
        return self.delay


@dataclass(frozen=True)
class ExponentialBackoff(BackoffStrategy):
    """
    base * multiplier ** (attempt - 1), capped at max_delay.

    Jitter spreads the delay by +/- jitter_factor so that steps failing
    against the same backend do not retry in lockstep.
    """

    base: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    jitter_factor: float = 0.25

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base * self.multiplier ** (attempt - 1), self.max_delay)
        if not self.jitter:
            return delay
        spread = delay * self.jitter_factor
        return max(0.0, delay + random.uniform(-spread, spread))


# =============================================================================
# Policy
# =============================================================================


def is_transient(error: Exception) -> bool:
    """True for provider timeouts and unreachable backends."""
    return isinstance(error, ProviderInvocationError) and error.transient


@dataclass
class RetryPolicy:
    max_attempts: int = 1
    backoff: BackoffStrategy = field(default_factory=NoBackoff)
    retry_if: Callable[[Exception], bool] = is_transient

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return attempt < self.max_attempts and self.retry_if(error)

    def get_delay(self, attempt: int) -> float:
        return self.backoff.get_delay(attempt)


NO_RETRY = RetryPolicy(max_attempts=1)


# =============================================================================
# Driver
# =============================================================================


@dataclass
class RetryResult:
    success: bool
    result: Any = None
    attempts: int = 0
    total_delay: float = 0.0
    errors: list[Exception] = field(default_factory=list)

    @property
    def final_error(self) -> Exception | None:
        return self.errors[-1] if self.errors else None


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    operation_name: str = "operation",
) -> RetryResult:
    """
    Await `operation()` until it succeeds or the policy gives up.

    Failures are collected rather than raised; the caller decides what the
    final error means for its step.
    """
    outcome = RetryResult(success=False)
    while True:
        outcome.attempts += 1
        try:
            outcome.result = await operation()
        except Exception as e:
            outcome.errors.append(e)
            if not policy.should_retry(outcome.attempts, e):
                break
            delay = policy.get_delay(outcome.attempts)
            outcome.total_delay += delay
            logger.warning(
                f"[{operation_name}] attempt {outcome.attempts}/{policy.max_attempts} "
                f"failed ({type(e).__name__}: {e}); retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
        else:
            outcome.success = True
            return outcome

    if outcome.attempts > 1:
        logger.error(
            f"[{operation_name}] giving up after {outcome.attempts} attempts: "
            f"{outcome.final_error}"
        )
    return outcome


__all__ = [
    "NO_RETRY",
    "BackoffStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "NoBackoff",
    "RetryPolicy",
    "RetryResult",
    "is_transient",
    "with_retry",
]
