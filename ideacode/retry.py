"""Retry policy for model round-trips: rate limits and empty responses."""

import asyncio
from typing import Awaitable, Callable

from ideacode.exceptions import EmptyResponseError, RateLimitError, RateLimitExhaustedError
from ideacode.llm import ContentBlock, has_meaningful_output
from ideacode.logging import get_logger

log = get_logger(__name__)

RoundTrip = Callable[[], Awaitable[list[ContentBlock]]]
RetryCallback = Callable[[int, int, int, int | None], None]


class RetryController:
    """Wrap a single model round-trip with two composed retry axes.

    The inner axis retries rate-limited calls (429/529) up to ``max_attempts``
    total attempts, waiting for the server hint or an exponential default.
    The outer axis re-runs a call whose response is meaningfully empty (no
    non-blank text and no tool use) up to ``max_empty_retries`` more times;
    each of those re-runs goes through the rate-limit axis again.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_empty_retries: int = 3,
        status_callback: Callable[[str], None] | None = None,
        on_retry: RetryCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.max_delay = max(0.0, float(max_delay))
        self.max_empty_retries = max(0, int(max_empty_retries))
        self.status_callback = status_callback
        self.on_retry = on_retry
        self._sleep = sleep

    def _emit_status(self, status: str) -> None:
        if self.status_callback:
            self.status_callback(status)

    def compute_wait(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retrying after failed ``attempt`` (1-based)."""
        if retry_after is not None and retry_after >= 0:
            return min(self.max_delay, float(retry_after))
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))

    async def call_with_rate_limit_retry(self, round_trip: RoundTrip) -> list[ContentBlock]:
        """Run ``round_trip``, retrying only on rate-limit responses."""
        attempt = 1
        while True:
            try:
                return await round_trip()
            except RateLimitError as e:
                if attempt >= self.max_attempts:
                    log.warning("Rate limit retries exhausted", attempts=attempt, status=e.status_code)
                    raise RateLimitExhaustedError(attempts=attempt, status_code=e.status_code) from e
                wait = self.compute_wait(attempt, e.retry_after)
                wait_ms = int(round(wait * 1000))
                if self.on_retry:
                    self.on_retry(attempt, self.max_attempts, wait_ms, e.status_code)
                self._emit_status(
                    f"Rate limited ({e.status_code}), retry {attempt}/{self.max_attempts} in {wait:.1f}s…"
                )
                log.info(
                    "Rate limited, backing off",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    wait_ms=wait_ms,
                    status=e.status_code,
                )
                await self._sleep(wait)
                attempt += 1

    async def run(self, round_trip: RoundTrip) -> list[ContentBlock]:
        """Return the first meaningful response, or raise once retries run out.

        Raises:
            RateLimitExhaustedError: still rate limited after ``max_attempts``
            EmptyResponseError: empty after ``max_empty_retries`` re-runs
        """
        empty_retries = 0
        while True:
            blocks = await self.call_with_rate_limit_retry(round_trip)
            if has_meaningful_output(blocks):
                return blocks
            empty_retries += 1
            if empty_retries > self.max_empty_retries:
                log.warning("Model returned empty output repeatedly", attempts=empty_retries)
                raise EmptyResponseError(attempts=empty_retries)
            self._emit_status(f"No output yet, retrying {empty_retries}/{self.max_empty_retries}…")
            log.info("Empty model turn, retrying", retry=empty_retries, max_retries=self.max_empty_retries)
