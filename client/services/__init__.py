"""
Pipeline Client Services

This package contains the stopwatch registry, the stage orchestrators
(services.orchestrators) and the session that ties them to the transfer
gateway (services.session).
"""

from .stopwatch import StopwatchRegistry, NullStopwatchRegistry, TimerSubscription
from .pipeline_logger import (
    OperationLogger,
    StageMetrics,
    timed_request,
    configure_pipeline_logging,
)

__all__ = [
    # Stopwatches
    "StopwatchRegistry",
    "NullStopwatchRegistry",
    "TimerSubscription",
    # Logging
    "OperationLogger",
    "StageMetrics",
    "timed_request",
    "configure_pipeline_logging",
]
