# SPDX-License-Identifier: MIT
"""Backoff for API calls that may fail while the cluster is busy.

Only errors the API server reports as retryable (conflicts, throttling,
unavailable backends) and socket-level failures are retried. Anything else
surfaces on the first attempt so the work queue can classify it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, model_validator
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from core.errors import TransientError

__all__ = ["RETRYABLE_ERRORS", "RetryPolicy", "run_with_retry"]

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (TransientError, TimeoutError, ConnectionError)


class RetryPolicy(BaseModel):
    """How list calls back off before handing a failure to the caller."""

    model_config = ConfigDict(frozen=True)

    attempts: PositiveInt = Field(5, description="Calls made before the last error is re-raised.")
    initial_backoff: PositiveFloat = Field(0.2, description="Seconds to wait before the first retry.")
    max_backoff: PositiveFloat = Field(30.0, description="Ceiling for a single wait.")
    max_jitter: float = Field(0.5, ge=0.0, description="Random seconds added to every wait.")

    @model_validator(mode="after")
    def _check_window(self) -> "RetryPolicy":
        if self.initial_backoff > self.max_backoff:
            raise ValueError("initial_backoff must not exceed max_backoff")
        return self

    def retrying(self, logger: logging.Logger, description: str) -> Retrying:
        def _log_retry(state: RetryCallState) -> None:
            outcome = state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            logger.warning(
                "Retrying %s after attempt %d failed: %s (next try in %.2fs)",
                description,
                state.attempt_number,
                error,
                delay,
            )

        return Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential_jitter(
                initial=self.initial_backoff, max=self.max_backoff, jitter=self.max_jitter
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=_log_retry,
            reraise=True,
        )


def run_with_retry(
    policy: RetryPolicy,
    logger: logging.Logger,
    operation: Callable[[], T],
    *,
    description: str = "operation",
) -> T:
    """Call *operation* until it succeeds, fails permanently, or attempts run out."""

    return policy.retrying(logger, description)(operation)
