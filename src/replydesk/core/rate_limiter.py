"""Token bucket rate limiting for oracle requests.

The batch processor runs several emails at once, each issuing up to three
sequential oracle calls from a worker thread. The bucket keeps the combined
request rate under the provider's limit instead of relying on 429 responses.

Each oracle client owns its own bucket (no module-level registry), so
separate instances in tests never share state.
"""

import threading
import time

from replydesk.core.errors import RateLimitExceeded
from replydesk.core.logging import get_logger

logger = get_logger(__name__)

# Waits longer than this are treated as a misconfiguration, not throttling
MAX_WAIT_SECONDS = 20.0

# Upper bound of processing.concurrency; each worker holds at most one
# reservation at a time
MAX_QUEUED_CALLERS = 5


class TokenBucket:
    """Thread-safe token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    token is available, the caller sleeps until one is.

    Example:
        # Allow 2 requests per second with a burst of 4
        limiter = TokenBucket(rate=2.0, capacity=4)
        limiter.consume()  # Blocks if needed
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
        max_wait: float | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
            max_wait: Longest acceptable wait in seconds. Defaults to enough
                for MAX_QUEUED_CALLERS reservations at this rate, and never
                less than MAX_WAIT_SECONDS.
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()
        if max_wait is None:
            max_wait = max(MAX_WAIT_SECONDS, (MAX_QUEUED_CALLERS + 1) / rate)
        self.max_wait = max_wait

    def consume(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the request exceeds capacity or would
                require waiting longer than max_wait
        """
        if tokens > self.capacity:
            logger.error(
                "rate_limit_over_capacity",
                tokens=tokens,
                capacity=self.capacity,
            )
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity}). "
                "Raise oracle.requests_per_second burst capacity in config.yaml."
            )

        with self.lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate

            if wait_time > self.max_wait:
                logger.warning(
                    "rate_limit_excessive_wait",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded, would require {wait_time:.2f}s wait"
                )

            # Reserve the tokens now so concurrent callers queue behind us
            self.tokens -= tokens

        logger.debug(
            "rate_limit_waiting",
            wait_time=round(wait_time, 3),
            tokens_needed=required_tokens,
        )
        time.sleep(wait_time)
        return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now
