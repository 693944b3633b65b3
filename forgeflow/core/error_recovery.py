"""Bounded transport retry for REST and storage calls, and component health checks."""

import asyncio
import random
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional, Sequence, Type

from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import get_logger, RecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Retry policy for transport-level failures.

    Step-level recovery (push rebase, install-and-retry) is a single explicit
    retry inside the step and never goes through this helper.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Sequence[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (TransientError, StorageError))

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts or not isinstance(exception, self.retryable_exceptions):
            return False
        # Engine errors opt out through their recoverable flag
        return exception.recoverable if isinstance(exception, WorkflowEngineError) else True

    def get_delay(self, attempt: int) -> float:
        """Doubling backoff capped at ``max_delay``, jittered down to half."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        return delay * random.uniform(0.5, 1.0) if self.jitter else delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorate a function so retryable failures are re-attempted under ``config``."""
    policy = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        trail = RecoveryLogger(func.__name__)

        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not policy.should_retry(e, attempt):
                        if attempt > 1:
                            trail.gave_up(func.__name__, e)
                        raise
                    trail.retrying(func.__name__, f"attempt {attempt}/{policy.max_attempts}: {e}")
                    time.sleep(policy.get_delay(attempt))
                    attempt += 1
                    continue
                if attempt > 1:
                    trail.recovered(func.__name__)
                return result

        return wrapper

    return decorator


class HealthChecker:
    """Runs named component checks and aggregates their status."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a check (sync or async) returning a message string or a details dict."""
        self.checks[name] = {"func": check_func, "timeout": timeout}
        logger.info(f"Registered health check: {name}")

    @staticmethod
    def _result(status: str, started: float, message: str, **details) -> Dict[str, Any]:
        return {
            "status": status,
            "message": message,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "timestamp": datetime.utcnow().isoformat(),
            **details,
        }

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        started = time.time()
        if check is None:
            return self._result("error", started, f"Health check '{name}' not found")

        func, timeout = check["func"], check["timeout"]
        try:
            if asyncio.iscoroutinefunction(func):
                outcome = await asyncio.wait_for(func(), timeout=timeout)
            else:
                outcome = func()
        except asyncio.TimeoutError:
            result = self._result("timeout", started, f"Health check timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            result = self._result("unhealthy", started, str(e), error_type=type(e).__name__)
        else:
            result = self._result("healthy", started, outcome if isinstance(outcome, str) else "Check passed")
            if isinstance(outcome, dict):
                result.update(outcome)

        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run every registered check; overall status is healthy only if all are."""
        results = {name: await self.run_check(name) for name in self.checks}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }
