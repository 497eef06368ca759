"""
Pipeline logging and metrics.

Provides contextual logging, timing metrics, and a bounded run history
for the pipeline stage orchestrators.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

from config import get_settings

logger = logging.getLogger("pipeline_client.pipeline")


@dataclass
class StageMetrics:
    """Metrics for a single stage action"""
    stage: str
    operation_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark stage action as complete"""
        self.ended_at = datetime.utcnow()
        self.duration_ms = (self.ended_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "operationId": self.operation_id,
            "startedAt": self.started_at.isoformat() + "Z",
            "endedAt": self.ended_at.isoformat() + "Z" if self.ended_at else None,
            "durationMs": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


class OperationLogger:
    """
    Structured logger for one orchestrator.

    Tags every message with the stage name and keeps the metrics of the most
    recent actions.
    """

    def __init__(self, stage: str, history_size: int = 20):
        self.stage = stage
        self._history: Deque[StageMetrics] = deque(maxlen=max(1, history_size))

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        """Log with stage context"""
        extra = {
            "stage": self.stage,
            **kwargs,
        }
        logger.log(level, f"[{self.stage}] {message}", extra=extra)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def begin(self, stage: Optional[str] = None, **metadata: Any) -> StageMetrics:
        """Open a metrics record for a new action"""
        metrics = StageMetrics(
            stage=stage or self.stage,
            operation_id=uuid4().hex[:8],
            started_at=datetime.utcnow(),
            metadata=metadata,
        )
        self.info(f"Action {metrics.operation_id} started", operation_id=metrics.operation_id)
        return metrics

    def finish(
        self,
        metrics: StageMetrics,
        success: bool,
        error: Optional[str] = None,
        elapsed_display: Optional[str] = None,
    ) -> StageMetrics:
        """Close a metrics record and add it to the history"""
        metrics.complete(success=success, error=error)
        if elapsed_display:
            metrics.metadata["elapsedDisplay"] = elapsed_display
        self._history.append(metrics)

        if success:
            self.info(
                f"Action {metrics.operation_id} succeeded in {metrics.duration_ms:.1f}ms",
                operation_id=metrics.operation_id,
            )
        else:
            self.warning(
                f"Action {metrics.operation_id} failed after {metrics.duration_ms:.1f}ms: {error}",
                operation_id=metrics.operation_id,
            )
        return metrics

    @property
    def history(self) -> List[StageMetrics]:
        """Completed actions, oldest first"""
        return list(self._history)

    def summary(self) -> str:
        """Generate human-readable summary"""
        lines = [f"Stage {self.stage}: {len(self._history)} recorded action(s)"]
        for metrics in self._history:
            status = "OK" if metrics.success else "FAILED"
            duration = f"{metrics.duration_ms:.1f}ms" if metrics.duration_ms is not None else "..."
            lines.append(f"  - {metrics.operation_id}: {status} ({duration})")
        return "\n".join(lines)


def timed_request(stage_name: str):
    """
    Decorator for timing async gateway calls.

    Usage:
        @timed_request("generate")
        async def generate(self, count):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                duration_ms = (time.perf_counter() - start) * 1000
                logger.debug(
                    f"Request '{stage_name}' completed in {duration_ms:.1f}ms"
                )
                return result
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.error(
                    f"Request '{stage_name}' failed after {duration_ms:.1f}ms: {e}"
                )
                raise
        return wrapper
    return decorator


def configure_pipeline_logging(
    level: Optional[int] = None,
    format_string: Optional[str] = None,
) -> None:
    """
    Configure pipeline logging.

    Args:
        level: Logging level (defaults to settings.log_level)
        format_string: Optional custom format string
    """
    if level is None:
        level = getattr(logging, get_settings().log_level.upper(), logging.INFO)

    if format_string is None:
        format_string = (
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))

    pipeline_logger = logging.getLogger("pipeline_client.pipeline")
    pipeline_logger.setLevel(level)
    pipeline_logger.addHandler(handler)
    pipeline_logger.propagate = False
