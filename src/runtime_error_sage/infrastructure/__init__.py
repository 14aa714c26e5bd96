"""Infrastructure layer for the runtime error analysis pipeline.

Re-exports the public API surface for convenience::

    from runtime_error_sage.infrastructure import (
        EventBus, EventStore, ActionHandlerRegistry,
        PatternStore, InMemoryPatternBackend, SageConfig,
    )

The Redis backend lives in :mod:`runtime_error_sage.infrastructure.redis_backend`
and is imported explicitly since it needs the ``redis`` extra.
"""

from runtime_error_sage.infrastructure.backends import (
    InMemoryPatternBackend,
    PatternBackend,
)
from runtime_error_sage.infrastructure.cancellation import (
    CancellationToken,
    ensure_token,
)
from runtime_error_sage.infrastructure.config import (
    ClassifierConfig,
    ExecutorConfig,
    GraphConfig,
    LLMSettings,
    MetricsConfig,
    PipelineConfig,
    RiskConfig,
    SageConfig,
    StoreConfig,
    ValidatorConfig,
    load_config_from_json,
    load_sage_config,
)
from runtime_error_sage.infrastructure.event_bus import EventBus, EventStore
from runtime_error_sage.infrastructure.llm import LLMClient, LLMError
from runtime_error_sage.infrastructure.pattern_cache import PatternCache
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from runtime_error_sage.infrastructure.registry import (
    ActionHandler,
    ActionHandlerRegistry,
    HandlerSpec,
)
from runtime_error_sage.infrastructure.serialization import (
    analysis_to_dict,
    load_context,
    remediation_to_dict,
    to_json,
)

__all__ = [
    # Event bus
    "EventBus",
    "EventStore",
    # Cancellation
    "CancellationToken",
    "ensure_token",
    # Registry
    "ActionHandler",
    "ActionHandlerRegistry",
    "HandlerSpec",
    # Pattern store
    "PatternBackend",
    "InMemoryPatternBackend",
    "PatternCache",
    "PatternStore",
    # Configuration
    "ClassifierConfig",
    "ExecutorConfig",
    "GraphConfig",
    "LLMSettings",
    "MetricsConfig",
    "PipelineConfig",
    "RiskConfig",
    "SageConfig",
    "StoreConfig",
    "ValidatorConfig",
    "load_config_from_json",
    "load_sage_config",
    # Serialization
    "analysis_to_dict",
    "remediation_to_dict",
    "load_context",
    "to_json",
    # LLM
    "LLMClient",
    "LLMError",
]
