"""Lifecycle telemetry: events, sinks, the correlation engine and chain analysis.

``TelemetryBridge`` lives in ``delegator.telemetry.bridge`` and is imported
from there; it depends on the runtime package.
"""

from delegator.telemetry.analysis import (
    AnomalySeverity,
    AnomalyThresholds,
    AnomalyType,
    ChainAnalysis,
    ChainAnomaly,
    PerformanceSummary,
    TimelineEntry,
    analyze_chain,
    find_anomalies,
    generate_performance_summary,
)
from delegator.telemetry.engine import TelemetryConfig, TelemetryEngine
from delegator.telemetry.events import (
    COMPLETION_EVENT_TYPES,
    ChainCorrelation,
    ChainStatus,
    EventType,
    PerformanceMetrics,
    QualityMetrics,
    ResourceUtilization,
    Severity,
    TelemetryEvent,
    TelemetryQueryFilter,
)
from delegator.telemetry.sinks import (
    ConsoleTelemetrySink,
    InMemoryTelemetrySink,
    SQLiteTelemetrySink,
    TelemetrySink,
)

__all__ = [
    "AnomalySeverity",
    "AnomalyThresholds",
    "AnomalyType",
    "COMPLETION_EVENT_TYPES",
    "ChainAnalysis",
    "ChainAnomaly",
    "ChainCorrelation",
    "ChainStatus",
    "ConsoleTelemetrySink",
    "EventType",
    "InMemoryTelemetrySink",
    "PerformanceMetrics",
    "PerformanceSummary",
    "QualityMetrics",
    "ResourceUtilization",
    "SQLiteTelemetrySink",
    "Severity",
    "TelemetryConfig",
    "TelemetryEngine",
    "TelemetryEvent",
    "TelemetryQueryFilter",
    "TelemetrySink",
    "TimelineEntry",
    "analyze_chain",
    "find_anomalies",
    "generate_performance_summary",
]
