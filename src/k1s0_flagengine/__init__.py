"""k1s0 flagengine library."""

from .breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .bucket import bucket
from .cache import CacheBackend, InMemoryCacheBackend
from .client import FlagsPayload, InMemoryOriginClient, OriginClient
from .collectors import ConversionCollector, ErrorCollector, EvaluationCollector, FlushRateLimiter
from .config import FlagEngineConfig
from .context import Context, HasFlagContext, VersionResolver
from .evaluator import FlagEvaluator
from .events import EventDispatcher, FlagEvaluated, FlagSyncCompleted, TelemetryFlushed
from .exceptions import (
    CircuitOpenError,
    CircularDependencyError,
    ConfigError,
    ConfigErrorCodes,
    FlagEngineError,
    FlagEngineErrorCodes,
    FlagSyncError,
    OriginUnavailableError,
)
from .flags import FeatureFlags
from .http_client import HttpOriginClient
from .loader import load
from .logger import new_logger
from .models import (
    Condition,
    Dependency,
    EvaluationOutcome,
    Flag,
    FlagValue,
    MatchReason,
    Rule,
    Segment,
    SegmentRule,
)
from .operators import OperatorMatcher
from .resolver import ContextNormalizer, ContextResolver
from .scope import RequestScope
from .service import FlagService
from .store import CachedFlagStore, FlagStore, LocalFlagStore
from .tracker import FlagStateTracker

__all__ = [
    "CacheBackend",
    "CachedFlagStore",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircularDependencyError",
    "Condition",
    "ConfigError",
    "ConfigErrorCodes",
    "Context",
    "ContextNormalizer",
    "ContextResolver",
    "ConversionCollector",
    "Dependency",
    "ErrorCollector",
    "EvaluationCollector",
    "EvaluationOutcome",
    "EventDispatcher",
    "FeatureFlags",
    "Flag",
    "FlagEngineConfig",
    "FlagEngineError",
    "FlagEngineErrorCodes",
    "FlagEvaluated",
    "FlagEvaluator",
    "FlagService",
    "FlagStateTracker",
    "FlagStore",
    "FlagSyncCompleted",
    "FlagSyncError",
    "FlagValue",
    "FlagsPayload",
    "FlushRateLimiter",
    "HasFlagContext",
    "HttpOriginClient",
    "InMemoryCacheBackend",
    "InMemoryOriginClient",
    "LocalFlagStore",
    "MatchReason",
    "OperatorMatcher",
    "OriginClient",
    "OriginUnavailableError",
    "RequestScope",
    "Rule",
    "Segment",
    "SegmentRule",
    "TelemetryFlushed",
    "VersionResolver",
    "bucket",
    "load",
    "new_logger",
]
