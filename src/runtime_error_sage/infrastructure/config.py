"""Configuration dataclasses for the runtime error analysis pipeline.

Each config is a plain ``dataclass`` with a ``validate()`` method that raises
``ValueError`` on invalid combinations -- stdlib ``dataclasses`` only.

Configs are **frozen** (``frozen=True``) so they can be shared between
threads and components without risking silent mutation.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from runtime_error_sage.domain.enums import RiskLevel


def _filtered(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    valid_keys = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid_keys}


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0, 1], got {value}")


# ===================================================================== #
#  Graph construction and analysis                                       #
# ===================================================================== #

@dataclass(frozen=True)
class GraphConfig:
    """Parameters for dependency-graph construction and analysis.

    Attributes
    ----------
    max_depth:
        Maximum number of hops expanded outward from the failing component.
    max_nodes:
        Hard cap on graph size; exceeding it fails construction.
    max_workers:
        Threads used to expand independent subtrees concurrently.
    default_weight:
        Edge weight used when the topology does not declare one.
    correlation_window:
        Seconds around the current error within which another error on a
        nearby node counts as related.
    high_risk_threshold:
        Error-probability / edge-weight threshold for high-risk nodes.
    min_source_confidence:
        Root-cause candidates below this confidence are dropped.
    """

    max_depth: int = 4
    max_nodes: int = 500
    max_workers: int = 4
    default_weight: float = 1.0
    correlation_window: float = 300.0
    high_risk_threshold: float = 0.7
    min_source_confidence: float = 0.1

    def validate(self) -> None:
        """Raise ``ValueError`` if any field is out of valid range."""
        if self.max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {self.max_depth}")
        if self.max_nodes < 1:
            raise ValueError(f"max_nodes must be >= 1, got {self.max_nodes}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        _check_unit("default_weight", self.default_weight)
        if self.correlation_window < 0.0:
            raise ValueError(
                f"correlation_window must be >= 0, got {self.correlation_window}"
            )
        _check_unit("high_risk_threshold", self.high_risk_threshold)
        _check_unit("min_source_confidence", self.min_source_confidence)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Classification                                                        #
# ===================================================================== #

@dataclass(frozen=True)
class ClassifierConfig:
    """Weights and thresholds for pattern-based classification.

    Attributes
    ----------
    type_weight / message_weight / tag_weight:
        Relative weights of the error-type, message-token and tag
        similarity components.  Components that carry no information
        (e.g. neither side has tags) are left out and the remaining
        weights renormalised.
    min_similarity:
        Matches scoring below this threshold yield ``Unknown``.
    failure_scale:
        Occurrence count at which historical failure frequency reaches
        ``1 - 1/e``.
    history_weight:
        Share of historical frequency (vs. current ill-health) in the
        per-node error probability.
    """

    type_weight: float = 0.6
    message_weight: float = 0.1
    tag_weight: float = 0.3
    min_similarity: float = 0.35
    failure_scale: float = 5.0
    history_weight: float = 0.5

    def validate(self) -> None:
        for name in ("type_weight", "message_weight", "tag_weight"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.type_weight + self.message_weight + self.tag_weight <= 0.0:
            raise ValueError("at least one similarity weight must be positive")
        _check_unit("min_similarity", self.min_similarity)
        if self.failure_scale <= 0.0:
            raise ValueError(f"failure_scale must be > 0, got {self.failure_scale}")
        _check_unit("history_weight", self.history_weight)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClassifierConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Risk assessment                                                       #
# ===================================================================== #

@dataclass(frozen=True)
class RiskConfig:
    """Fixed thresholds for mapping actions onto risk levels.

    Attributes
    ----------
    wide_blast_radius:
        Fraction of graph nodes above which an irreversible action is
        always ``CRITICAL``.
    blast_weight / irreversibility_weight / failure_weight:
        Weights of the composite risk score.
    unknown_failure_rate:
        Failure rate assumed for actions without history.
    min_history:
        Outcomes needed before history raises confidence.
    low_threshold / medium_threshold / high_threshold:
        Score boundaries between LOW/MEDIUM, MEDIUM/HIGH and HIGH/CRITICAL.
    """

    wide_blast_radius: float = 0.5
    blast_weight: float = 0.4
    irreversibility_weight: float = 0.35
    failure_weight: float = 0.25
    unknown_failure_rate: float = 0.3
    min_history: int = 3
    low_threshold: float = 0.3
    medium_threshold: float = 0.5
    high_threshold: float = 0.7

    def validate(self) -> None:
        _check_unit("wide_blast_radius", self.wide_blast_radius)
        _check_unit("unknown_failure_rate", self.unknown_failure_rate)
        if self.min_history < 0:
            raise ValueError(f"min_history must be >= 0, got {self.min_history}")
        if not (0.0 <= self.low_threshold <= self.medium_threshold <= self.high_threshold <= 1.0):
            raise ValueError(
                "thresholds must satisfy 0 <= low <= medium <= high <= 1, got "
                f"{self.low_threshold}, {self.medium_threshold}, {self.high_threshold}"
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Validation                                                            #
# ===================================================================== #

@dataclass(frozen=True)
class ValidatorConfig:
    """Pre- and post-execution validation parameters.

    Attributes
    ----------
    risk_ceiling:
        Highest aggregate risk level a plan may carry; anything above is
        rejected.
    approval_level:
        Aggregate risk at or above which (but not above the ceiling) the
        plan needs approval before running.
    grace_period:
        Seconds an action is given to move its target's health upward.
    poll_interval:
        Seconds between health polls during the grace period.
    min_improvement:
        Required health increase over the pre-action reading.
    healthy_threshold:
        A target at or above this health passes regardless of improvement.
    max_clock_skew:
        Allowed seconds a context timestamp may lie in the future.
    """

    risk_ceiling: str = RiskLevel.HIGH.value
    approval_level: str = RiskLevel.HIGH.value
    grace_period: float = 5.0
    poll_interval: float = 0.25
    min_improvement: float = 0.01
    healthy_threshold: float = 0.9
    max_clock_skew: float = 300.0

    @property
    def ceiling(self) -> RiskLevel:
        return RiskLevel(self.risk_ceiling)

    @property
    def approval(self) -> RiskLevel:
        return RiskLevel(self.approval_level)

    def validate(self) -> None:
        for name in ("risk_ceiling", "approval_level"):
            try:
                RiskLevel(getattr(self, name))
            except ValueError:
                raise ValueError(
                    f"{name} must be one of {[r.value for r in RiskLevel]}, "
                    f"got '{getattr(self, name)}'"
                ) from None
        if self.grace_period < 0.0:
            raise ValueError(f"grace_period must be >= 0, got {self.grace_period}")
        if self.poll_interval <= 0.0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")
        _check_unit("min_improvement", self.min_improvement)
        _check_unit("healthy_threshold", self.healthy_threshold)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Execution                                                             #
# ===================================================================== #

@dataclass(frozen=True)
class ExecutorConfig:
    """Retry and timeout policy for remediation actions.

    Attributes
    ----------
    max_retries:
        Retries per action after the first attempt (actions may override).
    base_retry_delay:
        Base delay for exponential backoff between attempts.
    max_retry_delay:
        Upper bound on a single backoff delay.
    action_timeout:
        Seconds an action handler may run (actions may override).
    approval_timeout:
        Seconds to wait for an approval decision.
    history_size:
        Finished executions kept for status queries; older ones are evicted.
    """

    max_retries: int = 2
    base_retry_delay: float = 0.5
    max_retry_delay: float = 10.0
    action_timeout: float = 30.0
    approval_timeout: float = 300.0
    history_size: int = 1000

    def validate(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_retry_delay < 0.0:
            raise ValueError(
                f"base_retry_delay must be >= 0, got {self.base_retry_delay}"
            )
        if self.max_retry_delay < self.base_retry_delay:
            raise ValueError("max_retry_delay must be >= base_retry_delay")
        if self.action_timeout <= 0.0:
            raise ValueError(f"action_timeout must be > 0, got {self.action_timeout}")
        if self.approval_timeout <= 0.0:
            raise ValueError(
                f"approval_timeout must be > 0, got {self.approval_timeout}"
            )
        if self.history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {self.history_size}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutorConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Pattern store                                                         #
# ===================================================================== #

@dataclass(frozen=True)
class StoreConfig:
    """Pattern-store connection, layout and retention parameters.

    Attributes
    ----------
    key_prefix:
        Prefix of pattern records: ``{key_prefix}{service}:{pattern_id}``.
    index_prefix:
        Prefix of secondary index entries (tag, category, type, action).
    max_reconnect_attempts:
        Reconnection attempts before falling back to DISCONNECTED.
    base_backoff / max_backoff:
        Exponential backoff between reconnection attempts, in seconds.
    operation_timeout:
        Seconds an operation waits for a reconnect in progress.
    retention_days:
        Patterns not updated for this long are eligible for deletion.
    cache_max_size / cache_max_age:
        Bounds of the pattern cache (entries, seconds).
    """

    key_prefix: str = "pattern:"
    index_prefix: str = "pattern-index:"
    max_reconnect_attempts: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 30.0
    operation_timeout: float = 5.0
    retention_days: float = 30.0
    cache_max_size: int = 1000
    cache_max_age: float = 86400.0

    @property
    def retention_seconds(self) -> float:
        return self.retention_days * 86400.0

    def validate(self) -> None:
        if not self.key_prefix or not self.index_prefix:
            raise ValueError("key_prefix and index_prefix must not be empty")
        if self.key_prefix.startswith(self.index_prefix) or self.index_prefix.startswith(self.key_prefix):
            raise ValueError("key_prefix and index_prefix must not overlap")
        if self.max_reconnect_attempts < 1:
            raise ValueError(
                f"max_reconnect_attempts must be >= 1, got {self.max_reconnect_attempts}"
            )
        if self.base_backoff < 0.0 or self.max_backoff < self.base_backoff:
            raise ValueError("backoff must satisfy 0 <= base_backoff <= max_backoff")
        if self.operation_timeout <= 0.0:
            raise ValueError(
                f"operation_timeout must be > 0, got {self.operation_timeout}"
            )
        if self.retention_days <= 0.0:
            raise ValueError(f"retention_days must be > 0, got {self.retention_days}")
        if self.cache_max_size < 0:
            raise ValueError(f"cache_max_size must be >= 0, got {self.cache_max_size}")
        if self.cache_max_age <= 0.0:
            raise ValueError(f"cache_max_age must be > 0, got {self.cache_max_age}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Metrics                                                               #
# ===================================================================== #

@dataclass(frozen=True)
class MetricsConfig:
    """Health-scoring parameters for the metrics collector.

    Attributes
    ----------
    window_size:
        Samples kept per ``(component, metric)`` series.
    cpu_threshold / memory_threshold / disk_threshold:
        Percent usage above which a component's health is degraded.
    degradation_factor:
        Multiplier applied to health for each exceeded threshold.
    error_window:
        Seconds of recorded errors retained for related-error search.
    """

    window_size: int = 100
    cpu_threshold: float = 80.0
    memory_threshold: float = 80.0
    disk_threshold: float = 90.0
    degradation_factor: float = 0.8
    error_window: float = 3600.0

    def validate(self) -> None:
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        for name in ("cpu_threshold", "memory_threshold", "disk_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise ValueError(f"{name} must be in [0, 100], got {value}")
        _check_unit("degradation_factor", self.degradation_factor)
        if self.error_window <= 0.0:
            raise ValueError(f"error_window must be > 0, got {self.error_window}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricsConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Language model                                                        #
# ===================================================================== #

@dataclass(frozen=True)
class LLMSettings:
    """Language-model analysis settings.

    Attributes
    ----------
    enabled:
        If ``False`` the pipeline runs pattern-only classification.
    base_url:
        OpenAI-compatible endpoint (LM Studio listens on port 1234).
    model:
        Model identifier sent with each request.
    api_key:
        Optional bearer token.
    timeout:
        Seconds allowed for one analysis call.
    temperature / max_tokens:
        Sampling parameters.
    """

    enabled: bool = True
    base_url: str = "http://localhost:1234/v1"
    model: str = "local-model"
    api_key: str = ""
    timeout: float = 30.0
    temperature: float = 0.2
    max_tokens: int = 1024

    def validate(self) -> None:
        if self.enabled and not self.base_url:
            raise ValueError("base_url is required when the LLM is enabled")
        if self.timeout <= 0.0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be in [0, 2], got {self.temperature}")
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {self.max_tokens}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LLMSettings:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Pipeline                                                              #
# ===================================================================== #

@dataclass(frozen=True)
class PipelineConfig:
    """Top-level orchestration parameters.

    Attributes
    ----------
    max_workers:
        Threads used to run impact analysis, classification and language
        model analysis concurrently.
    run_timeout:
        Seconds a joining caller waits for an in-flight run.
    persist_outcomes:
        Write observations and remediation outcomes back to the store.
    strategies:
        Default remediation action names per error type, used when no
        learned pattern suggests any.
    """

    max_workers: int = 4
    run_timeout: float = 300.0
    persist_outcomes: bool = True
    strategies: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.strategies is None:
            object.__setattr__(self, "strategies", {})

    def validate(self) -> None:
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.run_timeout <= 0.0:
            raise ValueError(f"run_timeout must be > 0, got {self.run_timeout}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Unified config                                                        #
# ===================================================================== #

_CONFIG_MAP: dict[str, type] = {
    "graph": GraphConfig,
    "classifier": ClassifierConfig,
    "risk": RiskConfig,
    "validator": ValidatorConfig,
    "executor": ExecutorConfig,
    "store": StoreConfig,
    "metrics": MetricsConfig,
    "llm": LLMSettings,
    "pipeline": PipelineConfig,
}


@dataclass(frozen=True)
class SageConfig:
    """Every config section, with defaults for sections left unspecified."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    llm: LLMSettings = field(default_factory=LLMSettings)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def validate(self) -> None:
        for f in fields(self):
            getattr(self, f.name).validate()

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name).to_dict() for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SageConfig:
        sections = {
            name: section_cls.from_dict(data[name])
            for name, section_cls in _CONFIG_MAP.items()
            if isinstance(data.get(name), dict)
        }
        return cls(**sections)


def load_config_from_json(json_str: str) -> dict[str, Any]:
    """Parse a JSON string into a dict of typed config objects.

    The JSON is expected to be an object whose top-level keys correspond to
    config section names (``graph``, ``classifier``, ``risk``, ``validator``,
    ``executor``, ``store``, ``metrics``, ``llm``, ``pipeline``).  Unknown
    sections are preserved as raw dicts.

    Returns a dict mapping section name -> config instance (or raw dict).
    """
    raw = json.loads(json_str)
    if not isinstance(raw, dict):
        raise ValueError("Top-level JSON must be an object")
    result: dict[str, Any] = {}
    for section, data in raw.items():
        cls = _CONFIG_MAP.get(section)
        if cls is not None and isinstance(data, dict):
            result[section] = cls.from_dict(data)
        else:
            result[section] = data
    return result


def load_sage_config(json_str: str) -> SageConfig:
    """Parse a JSON document into a :class:`SageConfig`."""
    raw = json.loads(json_str)
    if not isinstance(raw, dict):
        raise ValueError("Top-level JSON must be an object")
    return SageConfig.from_dict(raw)
