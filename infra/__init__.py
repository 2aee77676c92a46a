"""Infrastructure modules for momentum-trader"""

from .circuit_breaker import CircuitBreakerRegistry, CircuitStatus  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .resilience import ResilientCaller  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"CircuitBreakerRegistry",
	"CircuitStatus",
	"MetricsRecorder",
	"RateLimiter",
	"ResilientCaller",
	"StateStore",
]
