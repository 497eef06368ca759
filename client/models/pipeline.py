"""
Pipeline Data Models for the Student Data Pipeline client

Defines the data structures shared by the stopwatches, the transfer gateway
and the stage orchestrators.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar


# =============================================================================
# ENUMS
# =============================================================================

class Stage(str, Enum):
    """Pipeline stage; the value doubles as the stopwatch name"""
    GENERATE = "generate"
    CONVERT = "process"
    INGEST = "upload"
    REPORT_LOAD = "report-load"
    REPORT_EXPORT = "report-export"

    @property
    def failure_message(self) -> str:
        """Message shown when the service gives no reason of its own"""
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES = {
    Stage.GENERATE: "Generation failed",
    Stage.CONVERT: "Processing failed",
    Stage.INGEST: "Upload failed",
    Stage.REPORT_LOAD: "Failed to load students",
    Stage.REPORT_EXPORT: "Export failed",
}


class OperationStatus(str, Enum):
    """State of one orchestrator action"""
    IDLE = "idle"               # Nothing issued yet, or rejected locally
    BUSY = "busy"               # Request in flight
    SUCCEEDED = "succeeded"     # Request settled with a payload
    FAILED = "failed"           # Request settled with an error


class ExportFormat(str, Enum):
    """Export formats offered by the service"""
    EXCEL = "excel"
    CSV = "csv"
    PDF = "pdf"

    @property
    def extension(self) -> str:
        return "xlsx" if self is ExportFormat.EXCEL else self.value

    @property
    def file_name(self) -> str:
        return f"students.{self.extension}"


# =============================================================================
# STOPWATCH STATE
# =============================================================================

ZERO_DISPLAY = "0.000s"


def format_elapsed(elapsed_ms: float) -> str:
    """
    Render elapsed milliseconds for display.

    < 1s as whole milliseconds, < 1m as seconds with three decimals,
    otherwise whole minutes plus seconds with one decimal.
    """
    if elapsed_ms < 1000:
        return f"{elapsed_ms:.0f}ms"
    if elapsed_ms < 60000:
        return f"{elapsed_ms / 1000:.3f}s"
    minutes = int(elapsed_ms // 60000)
    seconds = (elapsed_ms % 60000) / 1000
    return f"{minutes}m {seconds:.1f}s"


@dataclass(frozen=True)
class TimerState:
    """Snapshot of a stopwatch"""
    running: bool = False
    elapsed_ms: float = 0.0
    display_text: str = ZERO_DISPLAY

    @classmethod
    def zero(cls) -> "TimerState":
        return cls()

    @classmethod
    def at(cls, elapsed_ms: float, running: bool) -> "TimerState":
        return cls(running=running, elapsed_ms=elapsed_ms, display_text=format_elapsed(elapsed_ms))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "elapsedMs": self.elapsed_ms,
            "displayText": self.display_text,
        }


# =============================================================================
# TRANSFER MODELS
# =============================================================================

@dataclass
class FilePayload:
    """File picked for upload"""
    file_name: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    def is_empty(self) -> bool:
        return not self.content


@dataclass
class Student:
    """Stored student record"""
    student_id: int
    first_name: str
    last_name: str
    dob: str
    student_class: str
    score: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Student":
        return cls(
            student_id=int(data["studentId"]),
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            dob=str(data.get("dob", "")),
            student_class=data.get("studentClass", ""),
            score=float(data.get("score", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "dob": self.dob,
            "studentClass": self.student_class,
            "score": self.score,
        }


@dataclass
class GenerateResult:
    """Location of the generated Excel workbook on the service host"""
    file_path: str


@dataclass
class ConvertResult:
    """Location of the normalized CSV on the service host"""
    file_path: str


@dataclass
class IngestResult:
    """Number of rows written to the store"""
    inserted_count: int


@dataclass
class StudentPage:
    """One page of query results"""
    records: List[Student] = field(default_factory=list)
    total_count: int = 0
    total_pages: int = 0
    size: int = 0
    number: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudentPage":
        return cls(
            records=[Student.from_dict(item) for item in data.get("content") or []],
            total_count=int(data.get("totalElements", 0)),
            total_pages=int(data.get("totalPages", 0)),
            size=int(data.get("size", 0)),
            number=int(data.get("number", 0)),
        )


@dataclass
class ExportResult:
    """Raw export payload, plus where it was saved once downloaded"""
    format: ExportFormat
    content: bytes
    content_type: Optional[str] = None
    saved_path: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.format.file_name

    @property
    def size(self) -> int:
        return len(self.content)


# =============================================================================
# QUERY STATE
# =============================================================================

@dataclass(frozen=True)
class QuerySpec:
    """Pagination and filter state of the report stage"""
    page_index: int = 0
    page_size: int = 10
    id_filter: Optional[str] = None
    class_filter: Optional[str] = None

    def with_page(self, page_index: int, page_size: Optional[int] = None) -> "QuerySpec":
        return replace(
            self,
            page_index=page_index,
            page_size=self.page_size if page_size is None else page_size,
        )

    def with_filters(self, id_filter: Optional[str], class_filter: Optional[str]) -> "QuerySpec":
        """New filters always send the view back to the first page"""
        return replace(
            self,
            page_index=0,
            id_filter=_trimmed(id_filter),
            class_filter=_trimmed(class_filter),
        )

    def cleared(self) -> "QuerySpec":
        return replace(self, page_index=0, id_filter=None, class_filter=None)


def _trimmed(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# =============================================================================
# OPERATION STATE
# =============================================================================

T = TypeVar("T")


@dataclass
class PipelineOperation(Generic[T]):
    """In-flight or settled state of one orchestrator action"""
    stage: Stage
    status: OperationStatus = OperationStatus.IDLE
    result: Optional[T] = None
    error_message: Optional[str] = None
    notice: Optional[str] = None
    elapsed_display: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def busy(self) -> bool:
        return self.status == OperationStatus.BUSY

    def begin(self) -> None:
        self.status = OperationStatus.BUSY
        self.result = None
        self.error_message = None
        self.notice = None
        self.elapsed_display = ""
        self.started_at = datetime.utcnow()
        self.ended_at = None

    def succeed(self, result: T, elapsed_display: str, notice: Optional[str] = None) -> None:
        self.status = OperationStatus.SUCCEEDED
        self.result = result
        self.error_message = None
        self.notice = notice
        self.elapsed_display = elapsed_display
        self.ended_at = datetime.utcnow()

    def fail(self, error_message: str, elapsed_display: str) -> None:
        self.status = OperationStatus.FAILED
        self.result = None
        self.error_message = error_message
        self.notice = error_message
        self.elapsed_display = elapsed_display
        self.ended_at = datetime.utcnow()

    def reject(self, error_message: str) -> None:
        """Local validation failure: report it but stay idle"""
        self.status = OperationStatus.IDLE
        self.result = None
        self.error_message = error_message
        self.notice = error_message
        self.elapsed_display = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "busy": self.busy,
            "errorMessage": self.error_message,
            "notice": self.notice,
            "elapsedDisplay": self.elapsed_display,
            "startedAt": self.started_at.isoformat() + "Z" if self.started_at else None,
            "endedAt": self.ended_at.isoformat() + "Z" if self.ended_at else None,
        }
