"""
Error policies: how soon to retry the failed reconciles.

A policy is a separate function from the reconciler, so that the retry
strategy can be replaced and tested independently. It gets the object
and the error, and returns the delay in seconds (or an :class:`Action`).

The default policy is a fixed delay regardless of the error or of how many
times it has already failed: it is enough for low-volume controllers.
For exponential or error-specific backoffs, write a custom policy.
"""
import dataclasses
from collections.abc import Callable
from typing import Any

from koncile._core.actions import invocation, results

ErrorPolicy = Callable[..., invocation.SyncOrAsync[float | results.Action | None]]

DEFAULT_ERROR_BACKOFF = 15.0


@dataclasses.dataclass(frozen=True)
class FixedBackoff:
    seconds: float = DEFAULT_ERROR_BACKOFF

    def __call__(self, *, error: Exception, **_: Any) -> float:
        return self.seconds


def fixed_backoff(seconds: float = DEFAULT_ERROR_BACKOFF) -> FixedBackoff:
    if seconds < 0:
        raise ValueError(f"The backoff cannot be negative: {seconds!r}")
    return FixedBackoff(seconds=float(seconds))


def interpret(result: object) -> results.Outcome:
    """
    Convert the policy's decision into an outcome: retry later, or not at all.

    ``None`` means that the failed object is not retried until it changes.
    """
    if isinstance(result, results.Error):
        raise TypeError(f"An error policy cannot return an error: {result!r}")
    return results.interpret(result)
