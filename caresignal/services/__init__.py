"""
Pipeline services.

This package contains the stage implementations (aggregation, baselines,
detection, risk scoring, prioritization), the orchestrator that runs them per
tenant, the triggers that start runs and the facade external callers use.
"""

from .aggregator import AggregationReport, ObservationAggregator, RawEventSource
from .baseline import BaselineEstimator
from .detectors import (
    AnomalyDetector,
    DetectionContext,
    DetectorRegistry,
    DeviationDetector,
    PerformanceDriftDetector,
    RushedCarePatternDetector,
    TrendDetector,
    WorkloadDetector,
)
from .narration import IssueNarrator
from .orchestrator import PipelineOrchestrator
from .prioritizer import IssuePrioritizer, apply_transition, priority_score
from .result import Result
from .risk import RiskScorer
from .scheduler import BacklogWatcher, PipelineScheduler, RunDispatcher, RunSignal, ScheduleTicker
from .service import CareSignalService
from .store import PipelineStore

__all__ = [
    "AggregationReport",
    "AnomalyDetector",
    "BacklogWatcher",
    "BaselineEstimator",
    "CareSignalService",
    "DetectionContext",
    "DetectorRegistry",
    "DeviationDetector",
    "IssueNarrator",
    "IssuePrioritizer",
    "ObservationAggregator",
    "PerformanceDriftDetector",
    "PipelineOrchestrator",
    "PipelineScheduler",
    "PipelineStore",
    "RawEventSource",
    "Result",
    "RiskScorer",
    "RunDispatcher",
    "RunSignal",
    "RushedCarePatternDetector",
    "ScheduleTicker",
    "TrendDetector",
    "WorkloadDetector",
    "apply_transition",
    "priority_score",
]
