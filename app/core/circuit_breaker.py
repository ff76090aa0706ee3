"""
Circuit Breaker Pattern Implementation

Guards outbound calls to third-party APIs (transactional email) so a
provider outage fails fast instead of stalling every notification.
"""
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from dataclasses import dataclass

from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # קריאות עוברות, נספרים כשלונות
    OPEN = "open"            # קריאות נחסמות עד timeout_seconds
    HALF_OPEN = "half_open"  # מספר מוגבל של קריאות ניסיון


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2          # הצלחות ב-half-open לסגירה
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Circuit breaker per external service, kept in a class-level registry.

    ספק המייל קורא ל-execute() רק עבור שגיאות זמניות (רשת, timeout, 5xx,
    429); תשובות 4xx חוזרות כרגיל ולא נספרות.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # threading.Lock ולא asyncio.Lock — כל task של Celery רץ ב-event loop חדש
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        with cls._instances_lock:
            if service_name not in cls._instances:
                cls._instances[service_name] = cls(service_name, config)
            return cls._instances[service_name]

    @classmethod
    def all_instances(cls) -> list["CircuitBreaker"]:
        with cls._instances_lock:
            return list(cls._instances.values())

    @classmethod
    def reset_all(cls) -> None:
        """ניקוי הרישום (לבדיקות)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    def _seconds_since_failure(self) -> float:
        return time.time() - self._state.last_failure_time

    def _transition_to(self, new_state: CircuitState) -> None:
        """מעבר מצב — נקרא רק כשה-lock מוחזק"""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value
            }
        )

    async def record_success(self) -> None:
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None
                }
            )

            if (
                self._state.state == CircuitState.HALF_OPEN
                or self._state.failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if self._seconds_since_failure() < self.config.timeout_seconds:
                    return False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        """שניות עד שה-breaker יאפשר קריאת ניסיון (0 כשלא פתוח)"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - self._seconds_since_failure())

    def snapshot(self) -> dict[str, Any]:
        """מצב נוכחי לתצוגה ב-endpoint אדמין"""
        return {
            "service": self.service_name,
            "state": self._state.state.value,
            "failure_count": self._state.failure_count,
            "failure_threshold": self.config.failure_threshold,
            "retry_after_seconds": round(self.get_retry_after(), 1),
        }

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any
    ) -> T:
        """
        הרצת coroutine מאחורי ה-breaker.

        Raises:
            CircuitBreakerOpenError: ה-breaker פתוח; func לא נקראת.
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result


def get_resend_circuit_breaker() -> CircuitBreaker:
    """Get circuit breaker for the Resend email API"""
    return CircuitBreaker.get_instance(
        "resend",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=60.0
        )
    )
