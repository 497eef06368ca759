"""
Pipeline Client Data Models

This package contains the data models shared by stopwatches, the transfer
gateway and the stage orchestrators.
"""

from .pipeline import (
    # Enums
    Stage,
    OperationStatus,
    ExportFormat,

    # Stopwatch state
    TimerState,
    format_elapsed,
    ZERO_DISPLAY,

    # Transfer models
    FilePayload,
    Student,
    GenerateResult,
    ConvertResult,
    IngestResult,
    StudentPage,
    ExportResult,

    # Query / operation state
    QuerySpec,
    PipelineOperation,
)

__all__ = [
    # Enums
    "Stage",
    "OperationStatus",
    "ExportFormat",

    # Stopwatch state
    "TimerState",
    "format_elapsed",
    "ZERO_DISPLAY",

    # Transfer models
    "FilePayload",
    "Student",
    "GenerateResult",
    "ConvertResult",
    "IngestResult",
    "StudentPage",
    "ExportResult",

    # Query / operation state
    "QuerySpec",
    "PipelineOperation",
]
