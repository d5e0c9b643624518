"""
Base connector class for the payment gateway and carrier
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log
from reconciler.utils.retry import is_retryable_error, calculate_backoff
import asyncio


class BaseConnector(ABC):
    """Base class for external service connectors"""

    # Retry configuration (can be overridden by subclasses)
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 2.0  # seconds
    RETRY_MAX_DELAY = 30.0  # seconds

    def __init__(self, name: str, timeout_seconds: float = 30.0):
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.last_request_at = None
        self.request_count = 0
        self.error_count = 0
        self.retry_count = 0  # Total retries across all calls

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials needed to talk to the service are present"""
        pass

    async def _retry_operation(
        self,
        operation,
        operation_name: str = "operation",
        retry_stats: Optional[Dict] = None
    ) -> Any:
        """
        Execute an operation with retry logic.

        Only errors accepted by is_retryable_error are retried; everything
        else (for instance a carrier rejection) is raised on first failure.

        Args:
            operation: Async callable to execute
            operation_name: Name for logging
            retry_stats: Dict to track retry statistics (mutated in place)

        Returns:
            Result of the operation
        """
        last_error = None
        self.request_count += 1
        self.last_request_at = utcnow()

        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            try:
                result = operation()

                # Handle coroutines (from async functions or lambdas wrapping async calls)
                if asyncio.iscoroutine(result):
                    result = await result

                if attempt > 1:
                    self.retry_count += (attempt - 1)

                return result

            except Exception as e:
                last_error = e

                if attempt >= self.RETRY_MAX_ATTEMPTS or not is_retryable_error(e):
                    self.error_count += 1
                    if retry_stats is not None:
                        retry_stats.setdefault("errors", []).append(f"{type(e).__name__}: {str(e)}")
                    raise

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.RETRY_BASE_DELAY,
                    max_delay=self.RETRY_MAX_DELAY
                )

                if retry_stats is not None:
                    retry_stats["retries"] = retry_stats.get("retries", 0) + 1
                    retry_stats["total_delay_seconds"] = retry_stats.get("total_delay_seconds", 0) + delay
                    retry_stats.setdefault("errors", []).append(f"{type(e).__name__}: {str(e)}")

                log.warning(
                    f"{self.name} {operation_name} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )

                await asyncio.sleep(delay)

        # Should not reach here
        raise last_error if last_error else RuntimeError("Retry exhausted")

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "configured": self.is_configured(),
            "last_request_at": self.last_request_at,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "error_rate": self.error_count / max(self.request_count, 1),
            "retry_config": {
                "max_attempts": self.RETRY_MAX_ATTEMPTS,
                "base_delay": self.RETRY_BASE_DELAY,
                "max_delay": self.RETRY_MAX_DELAY
            }
        }
