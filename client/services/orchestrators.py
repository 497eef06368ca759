"""
Pipeline Stage Orchestrators

One orchestrator per pipeline page (generate, convert, ingest, report). Each
pairs a named stopwatch with one gateway call per user action:

    Idle -> Busy -> Succeeded | Failed -> Busy ...

Starting an action starts the stopwatch and issues the request; the request's
completion stops the stopwatch and records the payload or the error message.
An action triggered while the previous one is still Busy is ignored.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from config import get_settings
from errors import (
    EmptyFileError,
    FileNotSelectedError,
    InvalidCountError,
    InvalidQueryError,
    PipelineClientError,
)
from integrations.transfer_gateway import TransferGateway
from models import (
    ConvertResult,
    ExportFormat,
    ExportResult,
    FilePayload,
    GenerateResult,
    IngestResult,
    PipelineOperation,
    QuerySpec,
    Stage,
    Student,
    StudentPage,
    TimerState,
)
from services.pipeline_logger import OperationLogger, StageMetrics
from services.stopwatch import StopwatchRegistry, TimerSubscription
from utils.files import load_file_payload, save_download
from utils.query_builder import build_query_params

logger = logging.getLogger(__name__)
settings = get_settings()

TimerListener = Callable[[Stage, TimerState], None]


class StageOrchestrator:
    """
    Base orchestrator: stopwatch binding, single-flight execution and teardown.

    Subclasses declare the stages they own in ``stages``; the first one is the
    primary stage.
    """

    stages: Tuple[Stage, ...] = ()

    def __init__(
        self,
        gateway: TransferGateway,
        registry: StopwatchRegistry,
        history_size: Optional[int] = None,
    ):
        self.gateway = gateway
        self.registry = registry
        self.log = OperationLogger(
            self.stage.value,
            history_size if history_size is not None else settings.operation_history_size,
        )

        self.timer_states: Dict[Stage, TimerState] = {
            stage: TimerState.zero() for stage in self.stages
        }
        self._subscriptions: Dict[Stage, TimerSubscription] = {}
        self._pumps: Dict[Stage, asyncio.Task] = {}
        # Strong references to pending request tasks
        self._requests: Dict[Stage, asyncio.Future] = {}
        self._listeners: List[TimerListener] = []
        self._opened = False
        self._disposed = False

    @property
    def stage(self) -> Stage:
        return self.stages[0]

    @property
    def timer_state(self) -> TimerState:
        """Live state of the primary stage's stopwatch"""
        return self.timer_states[self.stage]

    @property
    def disposed(self) -> bool:
        return self._disposed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Bind every owned stopwatch to ``timer_states``."""
        if self._opened or self._disposed:
            return
        self._opened = True

        for stage in self.stages:
            subscription = self.registry.subscribe(stage.value)
            self._subscriptions[stage] = subscription
            self._pumps[stage] = asyncio.create_task(
                self._pump(stage, subscription), name=f"timer-pump:{stage.value}"
            )
        self.log.debug("Opened")

    async def close(self) -> None:
        """
        Tear down: release stopwatch bindings and reset the stopwatches.

        In-flight requests are not aborted; their late completion is ignored.
        """
        if self._disposed:
            return
        self._disposed = True

        for subscription in self._subscriptions.values():
            subscription.close()
        for task in self._pumps.values():
            task.cancel()
        for task in self._pumps.values():
            try:
                await task
            except asyncio.CancelledError:
                pass

        for stage in self.stages:
            self.registry.reset(stage.value)

        self._subscriptions.clear()
        self._pumps.clear()
        self._listeners.clear()
        self.log.debug("Closed")

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def add_listener(self, listener: TimerListener) -> Callable[[], None]:
        """Call ``listener(stage, state)`` on every stopwatch update; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _pump(self, stage: Stage, subscription: TimerSubscription) -> None:
        async for state in subscription:
            self.timer_states[stage] = state
            for listener in list(self._listeners):
                try:
                    listener(stage, state)
                except Exception:
                    logger.exception(f"Timer listener failed for {stage.value}")

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        operation: PipelineOperation,
        call: Callable[[], Awaitable[Any]],
        on_success: Optional[Callable[[Any], None]] = None,
        describe: Optional[Callable[[Any, str], Optional[str]]] = None,
        **metadata: Any,
    ) -> PipelineOperation:
        """
        Run one action through the stage state machine.

        The Busy -> Succeeded/Failed transition is the completion handler of
        the request task, so it happens even if the awaiting caller goes away.
        """
        stage = operation.stage
        if self._ignored(operation):
            return operation

        operation.begin()
        self.registry.start(stage.value)
        metrics = self.log.begin(stage.value, **metadata)

        loop = asyncio.get_running_loop()
        settled = loop.create_future()
        request = asyncio.ensure_future(call())
        self._requests[stage] = request
        request.add_done_callback(
            lambda task: self._settle(operation, metrics, task, on_success, describe, settled)
        )

        return await asyncio.shield(settled)

    def _settle(
        self,
        operation: PipelineOperation,
        metrics: StageMetrics,
        task: asyncio.Future,
        on_success: Optional[Callable[[Any], None]],
        describe: Optional[Callable[[Any, str], Optional[str]]],
        settled: asyncio.Future,
    ) -> None:
        stage = operation.stage
        result = None
        error: Optional[str] = None

        if task.cancelled():
            error = stage.failure_message
        else:
            exc = task.exception()
            if exc is None:
                result = task.result()
            elif isinstance(exc, PipelineClientError):
                error = exc.message
            else:
                logger.error(f"Unexpected error in {stage.value}: {exc}", exc_info=exc)
                error = stage.failure_message

        if self._disposed:
            self.log.debug(f"Late {stage.value} response ignored after close")
        else:
            final_state = self.registry.stop(stage.value)
            elapsed = final_state.display_text
            notice = None
            if error is None:
                try:
                    if on_success is not None:
                        on_success(result)
                    notice = describe(result, elapsed) if describe else None
                except Exception as e:
                    logger.error(f"Failed to apply {stage.value} result: {e}", exc_info=True)
                    error = stage.failure_message
            if error is None:
                operation.succeed(result, elapsed, notice)
                self.log.finish(metrics, True, elapsed_display=elapsed)
            else:
                operation.fail(error, elapsed)
                self.log.finish(metrics, False, error=error, elapsed_display=elapsed)
            self._after_settle(operation)

        if not settled.done():
            settled.set_result(operation)

    def _after_settle(self, operation: PipelineOperation) -> None:
        """Called once an action settles on an orchestrator that is still open."""

    def _ignored(self, operation: PipelineOperation) -> bool:
        """Single-flight guard: True if a new action must not start."""
        if self._disposed:
            self.log.warning(f"{operation.stage.value} ignored: orchestrator is closed")
            return True
        if operation.busy:
            self.log.warning(f"{operation.stage.value} ignored: a request is already in flight")
            return True
        return False

    def _reject(self, operation: PipelineOperation, error: PipelineClientError) -> PipelineOperation:
        """Local validation failure: stay idle, never touch the network."""
        operation.reject(error.message)
        self.log.warning(f"{operation.stage.value} rejected: {error.message}")
        return operation

    @property
    def history(self) -> List[StageMetrics]:
        return self.log.history

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "timers": {stage.value: state.to_dict() for stage, state in self.timer_states.items()},
            "history": [metrics.to_dict() for metrics in self.history],
        }


# =============================================================================
# GENERATE
# =============================================================================

class GenerateOrchestrator(StageOrchestrator):
    """Generate a synthetic Excel dataset on the service host."""

    stages = (Stage.GENERATE,)

    def __init__(self, gateway: TransferGateway, registry: StopwatchRegistry, **kwargs: Any):
        super().__init__(gateway, registry, **kwargs)
        self.count = settings.default_generate_count
        self.operation: PipelineOperation[GenerateResult] = PipelineOperation(Stage.GENERATE)

    @property
    def file_path(self) -> Optional[str]:
        return self.operation.result.file_path if self.operation.result else None

    async def generate(self, count: Optional[int] = None) -> PipelineOperation[GenerateResult]:
        if self._ignored(self.operation):
            return self.operation

        count = self.count if count is None else count
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            return self._reject(self.operation, InvalidCountError(count))

        self.count = count
        return await self._execute(
            self.operation,
            lambda: self.gateway.generate(count),
            describe=lambda result, elapsed: f"Excel file generated in {elapsed}!",
            count=count,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "count": self.count,
            "operation": self.operation.to_dict(),
            "filePath": self.file_path,
        })
        return data


# =============================================================================
# CONVERT / INGEST
# =============================================================================

class FileStageOrchestrator(StageOrchestrator):
    """Base for stages that upload a user-selected file."""

    file_kind = "data"

    def __init__(self, gateway: TransferGateway, registry: StopwatchRegistry, **kwargs: Any):
        super().__init__(gateway, registry, **kwargs)
        self.selected_file: Optional[FilePayload] = None
        self.operation: PipelineOperation = PipelineOperation(self.stage)

    def select_file(self, payload: FilePayload) -> None:
        self.selected_file = payload
        self.log.debug(f"Selected {payload.file_name} ({payload.size} bytes)")

    def select_path(self, path: Union[str, Path]) -> FilePayload:
        """Read ``path`` from disk and select it."""
        payload = load_file_payload(path)
        self.select_file(payload)
        return payload

    def clear_selection(self) -> None:
        self.selected_file = None

    def _validated_file(self) -> Union[FilePayload, PipelineClientError]:
        if self.selected_file is None:
            return FileNotSelectedError(self.stage.value, self.file_kind)
        if self.selected_file.is_empty():
            return EmptyFileError(self.stage.value, self.selected_file.file_name)
        return self.selected_file

    async def _submit(
        self,
        call: Callable[[FilePayload], Awaitable[Any]],
        describe: Callable[[Any, str], Optional[str]],
    ) -> PipelineOperation:
        if self._ignored(self.operation):
            return self.operation

        payload = self._validated_file()
        if isinstance(payload, PipelineClientError):
            return self._reject(self.operation, payload)

        return await self._execute(
            self.operation,
            lambda: call(payload),
            describe=describe,
            fileName=payload.file_name,
            fileSize=payload.size,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "selectedFile": self.selected_file.file_name if self.selected_file else None,
            "operation": self.operation.to_dict(),
        })
        return data


class ConvertOrchestrator(FileStageOrchestrator):
    """Convert an uploaded Excel workbook into a normalized CSV."""

    stages = (Stage.CONVERT,)
    file_kind = "Excel"

    @property
    def file_path(self) -> Optional[str]:
        return self.operation.result.file_path if self.operation.result else None

    async def convert(self) -> PipelineOperation[ConvertResult]:
        return await self._submit(
            self.gateway.convert,
            lambda result, elapsed: f"CSV file created in {elapsed}!",
        )


class IngestOrchestrator(FileStageOrchestrator):
    """Load a normalized CSV into the store."""

    stages = (Stage.INGEST,)
    file_kind = "CSV"

    @property
    def inserted_count(self) -> int:
        return self.operation.result.inserted_count if self.operation.result else 0

    async def ingest(self) -> PipelineOperation[IngestResult]:
        return await self._submit(
            self.gateway.ingest,
            lambda result, elapsed: f"Inserted {result.inserted_count:,} records in {elapsed}!",
        )


# =============================================================================
# REPORT
# =============================================================================

CLASS_OPTIONS = ["Class1", "Class2", "Class3", "Class4", "Class5"]


class ReportOrchestrator(StageOrchestrator):
    """
    Paginated, filtered student listing plus export.

    Loading and exporting have separate stopwatches and separate operations;
    an export may run while a load is in flight. Query changes made during a
    load are applied once it settles, with a single follow-up load owned by
    the orchestrator rather than by the caller that started the first load.
    """

    stages = (Stage.REPORT_LOAD, Stage.REPORT_EXPORT)

    def __init__(
        self,
        gateway: TransferGateway,
        registry: StopwatchRegistry,
        download_dir: Optional[Union[str, Path]] = None,
        **kwargs: Any,
    ):
        super().__init__(gateway, registry, **kwargs)
        self.download_dir = Path(download_dir or settings.download_dir)
        self.query = QuerySpec(page_size=settings.default_page_size)
        self.records: List[Student] = []
        self.total_count = 0
        self.total_pages = 0
        self.load_operation: PipelineOperation[StudentPage] = PipelineOperation(Stage.REPORT_LOAD)
        self.export_operation: PipelineOperation[ExportResult] = PipelineOperation(Stage.REPORT_EXPORT)
        self._reload_pending = False
        self._follow_up: Optional[asyncio.Task] = None

    @property
    def load_timer_state(self) -> TimerState:
        return self.timer_states[Stage.REPORT_LOAD]

    @property
    def export_timer_state(self) -> TimerState:
        return self.timer_states[Stage.REPORT_EXPORT]

    async def open(self) -> None:
        """Bind stopwatches and fetch the first page."""
        already_open = self._opened
        await super().open()
        if not already_open and not self._disposed:
            await self.load()

    async def close(self) -> None:
        """Tear down; a follow-up load that has not settled is cancelled."""
        follow_up = self._follow_up
        self._follow_up = None
        self._reload_pending = False
        await super().close()
        if follow_up is not None and not follow_up.done():
            follow_up.cancel()
            try:
                await follow_up
            except asyncio.CancelledError:
                pass

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    async def load(self) -> PipelineOperation[StudentPage]:
        """Fetch the page described by ``query``."""
        if self.load_operation.busy:
            self._reload_pending = True
            self.log.debug("Load in flight; follow-up load scheduled")
            return self.load_operation

        operation = await self._checked_load()
        while self._follow_up is not None and not self._follow_up.done():
            follow_up = self._follow_up
            try:
                operation = await asyncio.shield(follow_up)
            except asyncio.CancelledError:
                if not follow_up.cancelled():
                    raise
                break
        return operation

    async def _checked_load(self) -> PipelineOperation[StudentPage]:
        try:
            build_query_params(self.query)
        except InvalidQueryError as e:
            return self._reject(self.load_operation, e)
        return await self._load_once()

    async def _load_once(self) -> PipelineOperation[StudentPage]:
        spec = self.query
        return await self._execute(
            self.load_operation,
            lambda: self.gateway.query(spec),
            on_success=self._apply_page,
            page=spec.page_index,
            size=spec.page_size,
        )

    def _after_settle(self, operation: PipelineOperation) -> None:
        if operation is self.load_operation and self._reload_pending:
            self._reload_pending = False
            self._follow_up = asyncio.ensure_future(self._checked_load())
            self.log.debug("Follow-up load started")

    def _apply_page(self, page: StudentPage) -> None:
        self.records = page.records
        self.total_count = page.total_count
        self.total_pages = page.total_pages

    async def change_page(self, page_index: int, page_size: Optional[int] = None) -> PipelineOperation[StudentPage]:
        """Move to another page (and optionally another page size)."""
        self.query = self.query.with_page(page_index, page_size)
        return await self.load()

    async def apply_filters(
        self,
        id_filter: Optional[str] = None,
        class_filter: Optional[str] = None,
    ) -> PipelineOperation[StudentPage]:
        """Filter by student id and/or class; blank filters are dropped."""
        self.query = self.query.with_filters(id_filter, class_filter)
        return await self.load()

    async def clear_filters(self) -> PipelineOperation[StudentPage]:
        self.query = self.query.cleared()
        return await self.load()

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    async def export(
        self,
        export_format: Union[ExportFormat, str],
        save: bool = True,
    ) -> PipelineOperation[ExportResult]:
        """
        Download every stored student.

        With ``save`` the payload is written to ``download_dir`` as
        students.xlsx / students.csv / students.pdf.
        """
        export_format = ExportFormat(export_format)

        async def download() -> ExportResult:
            result = await self.gateway.export_data(export_format)
            if save:
                path = save_download(result.content, result.file_name, self.download_dir)
                result.saved_path = str(path)
            return result

        if not self.export_operation.busy:
            self.log.info(f"Exporting to {export_format.value.upper()}...")
        return await self._execute(
            self.export_operation,
            download,
            describe=lambda result, elapsed: f"Exported in {elapsed}!",
            format=export_format.value,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "query": {
                "pageIndex": self.query.page_index,
                "pageSize": self.query.page_size,
                "idFilter": self.query.id_filter,
                "classFilter": self.query.class_filter,
            },
            "records": [record.to_dict() for record in self.records],
            "totalCount": self.total_count,
            "totalPages": self.total_pages,
            "load": self.load_operation.to_dict(),
            "export": self.export_operation.to_dict(),
        })
        return data
