"""
Unit tests for the pipeline stage orchestrators

The gateway is an AsyncMock; stopwatches are real.
"""

import asyncio
import re

import pytest

from errors import RemoteServiceError, TransportError
from models import (
    ConvertResult,
    ExportFormat,
    ExportResult,
    FilePayload,
    GenerateResult,
    IngestResult,
    OperationStatus,
    QuerySpec,
    Stage,
    StudentPage,
    TimerState,
)
from services.orchestrators import (
    CLASS_OPTIONS,
    ConvertOrchestrator,
    GenerateOrchestrator,
    IngestOrchestrator,
    ReportOrchestrator,
)
from services.stopwatch import NullStopwatchRegistry


@pytest.fixture
def csv_payload():
    return FilePayload("students.csv", b"studentId,firstName\n1,Amina\n", "text/csv")


@pytest.fixture
def excel_payload():
    return FilePayload("students.xlsx", b"PK\x03\x04workbook")


@pytest.fixture
def student_page(sample_page):
    return StudentPage.from_dict(sample_page)


class TestGenerateOrchestrator:
    """Tests for the generate stage"""

    @pytest.mark.asyncio
    async def test_generate_success(self, gateway, registry, delayed):
        """A ~50ms request settles with a millisecond display and the file path"""
        gateway.generate.side_effect = delayed(0.05, GenerateResult("out/students.xlsx"))

        async with GenerateOrchestrator(gateway, registry) as orchestrator:
            operation = await orchestrator.generate(1000)

            assert operation.status == OperationStatus.SUCCEEDED
            assert re.match(r"^\d+ms$", operation.elapsed_display)
            assert operation.notice == f"Excel file generated in {operation.elapsed_display}!"
            assert orchestrator.file_path == "out/students.xlsx"
            assert orchestrator.count == 1000
            assert not registry.is_running("generate")
            gateway.generate.assert_awaited_once_with(1000)

    @pytest.mark.asyncio
    async def test_default_count_used(self, gateway, registry):
        gateway.generate.return_value = GenerateResult("out/students.xlsx")
        orchestrator = GenerateOrchestrator(gateway, registry)

        await orchestrator.generate()

        gateway.generate.assert_awaited_once_with(1000)

    @pytest.mark.asyncio
    async def test_second_trigger_while_busy_ignored(self, gateway, registry, release, blocking):
        gateway.generate.side_effect = blocking(release, GenerateResult("out/students.xlsx"))
        orchestrator = GenerateOrchestrator(gateway, registry)

        first = asyncio.create_task(orchestrator.generate(10))
        await asyncio.sleep(0)
        assert orchestrator.operation.busy

        ignored = await orchestrator.generate(10)
        assert ignored.status == OperationStatus.BUSY

        release.set()
        operation = await first

        assert operation.status == OperationStatus.SUCCEEDED
        assert gateway.generate.call_count == 1
        assert gateway.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_remote_error_then_retry(self, gateway, registry):
        gateway.generate.side_effect = RemoteServiceError("Disk full", "generate", 500)
        orchestrator = GenerateOrchestrator(gateway, registry)

        failed = await orchestrator.generate(10)

        assert failed.status == OperationStatus.FAILED
        assert failed.error_message == "Disk full"
        assert failed.notice == "Disk full"
        assert orchestrator.file_path is None
        assert not registry.is_running("generate")

        gateway.generate.side_effect = None
        gateway.generate.return_value = GenerateResult("out/students.xlsx")
        retried = await orchestrator.generate(10)

        assert retried.status == OperationStatus.SUCCEEDED
        assert retried.error_message is None
        assert orchestrator.file_path == "out/students.xlsx"

    @pytest.mark.asyncio
    async def test_unexpected_error_uses_fallback_message(self, gateway, registry):
        gateway.generate.side_effect = RuntimeError("boom")
        orchestrator = GenerateOrchestrator(gateway, registry)

        operation = await orchestrator.generate(10)

        assert operation.status == OperationStatus.FAILED
        assert operation.error_message == "Generation failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1, "ten", 2.5])
    async def test_invalid_count_stays_idle(self, gateway, registry, count):
        orchestrator = GenerateOrchestrator(gateway, registry)

        operation = await orchestrator.generate(count)

        assert operation.status == OperationStatus.IDLE
        assert operation.error_message == "Record count must be a positive integer"
        assert registry.state("generate") == TimerState.zero()
        gateway.generate.assert_not_called()


class TestFileStageOrchestrators:
    """Tests for the convert and ingest stages"""

    @pytest.mark.asyncio
    async def test_ingest_without_file(self, gateway, registry):
        orchestrator = IngestOrchestrator(gateway, registry)

        operation = await orchestrator.ingest()

        assert operation.status == OperationStatus.IDLE
        assert operation.notice == "Please select a CSV file first"
        assert not registry.is_running("upload")
        gateway.ingest.assert_not_called()

    @pytest.mark.asyncio
    async def test_convert_without_file(self, gateway, registry):
        orchestrator = ConvertOrchestrator(gateway, registry)

        operation = await orchestrator.convert()

        assert operation.error_message == "Please select an Excel file first"
        gateway.convert.assert_not_called()

    @pytest.mark.asyncio
    async def test_convert_success(self, gateway, registry, excel_payload):
        gateway.convert.return_value = ConvertResult("out/students.csv")
        orchestrator = ConvertOrchestrator(gateway, registry)
        orchestrator.select_file(excel_payload)

        operation = await orchestrator.convert()

        assert operation.status == OperationStatus.SUCCEEDED
        assert operation.notice == f"CSV file created in {operation.elapsed_display}!"
        assert orchestrator.file_path == "out/students.csv"
        gateway.convert.assert_awaited_once_with(excel_payload)

    @pytest.mark.asyncio
    async def test_convert_remote_rejection(self, gateway, registry, excel_payload):
        gateway.convert.side_effect = RemoteServiceError("Invalid Excel format", "process", 400)
        orchestrator = ConvertOrchestrator(gateway, registry)
        orchestrator.select_file(excel_payload)

        operation = await orchestrator.convert()

        assert operation.status == OperationStatus.FAILED
        assert operation.notice == "Invalid Excel format"

    @pytest.mark.asyncio
    async def test_ingest_success(self, gateway, registry, csv_payload):
        gateway.ingest.return_value = IngestResult(1500)
        orchestrator = IngestOrchestrator(gateway, registry)
        orchestrator.select_file(csv_payload)

        operation = await orchestrator.ingest()

        assert operation.status == OperationStatus.SUCCEEDED
        assert operation.notice == f"Inserted 1,500 records in {operation.elapsed_display}!"
        assert orchestrator.inserted_count == 1500

    @pytest.mark.asyncio
    async def test_empty_file_rejected(self, gateway, registry):
        orchestrator = IngestOrchestrator(gateway, registry)
        orchestrator.select_file(FilePayload("empty.csv", b""))

        operation = await orchestrator.ingest()

        assert operation.status == OperationStatus.IDLE
        assert operation.error_message == "File is empty: empty.csv"
        gateway.ingest.assert_not_called()

    @pytest.mark.asyncio
    async def test_select_path_reads_file(self, gateway, registry, tmp_path):
        source = tmp_path / "cleaned.csv"
        source.write_bytes(b"studentId\n1\n")
        gateway.ingest.return_value = IngestResult(1)
        orchestrator = IngestOrchestrator(gateway, registry)

        payload = orchestrator.select_path(source)
        await orchestrator.ingest()

        assert payload.file_name == "cleaned.csv"
        assert payload.content_type == "text/csv"
        gateway.ingest.assert_awaited_once_with(payload)

    @pytest.mark.asyncio
    async def test_clear_selection(self, gateway, registry, csv_payload):
        orchestrator = IngestOrchestrator(gateway, registry)
        orchestrator.select_file(csv_payload)
        orchestrator.clear_selection()

        operation = await orchestrator.ingest()

        assert operation.error_message == "Please select a CSV file first"


class TestReportOrchestrator:
    """Tests for the report stage"""

    def test_class_options(self):
        assert CLASS_OPTIONS == ["Class1", "Class2", "Class3", "Class4", "Class5"]

    @pytest.mark.asyncio
    async def test_open_loads_first_page(self, gateway, registry, student_page, tmp_path):
        gateway.query.return_value = student_page
        report = ReportOrchestrator(gateway, registry, download_dir=tmp_path)

        await report.open()

        gateway.query.assert_awaited_once_with(QuerySpec(page_index=0, page_size=10))
        assert report.load_operation.status == OperationStatus.SUCCEEDED
        assert report.total_count == 41
        assert report.total_pages == 5
        assert report.records[0].student_id == 123
        await report.close()

    @pytest.mark.asyncio
    async def test_change_page(self, gateway, registry, student_page):
        gateway.query.return_value = student_page
        report = ReportOrchestrator(gateway, registry)

        await report.change_page(2)

        assert gateway.query.await_args.args[0] == QuerySpec(page_index=2, page_size=10)

        await report.change_page(0, page_size=25)
        assert gateway.query.await_args.args[0] == QuerySpec(page_index=0, page_size=25)

    @pytest.mark.asyncio
    async def test_apply_filters_resets_page(self, gateway, registry, student_page):
        gateway.query.return_value = student_page
        report = ReportOrchestrator(gateway, registry)
        report.query = QuerySpec(page_index=3)

        await report.apply_filters(" S123 ", "  ")

        spec = gateway.query.await_args.args[0]
        assert spec.page_index == 0
        assert spec.id_filter == "S123"
        assert spec.class_filter is None

        await report.clear_filters()
        assert gateway.query.await_args.args[0] == QuerySpec()

    @pytest.mark.asyncio
    async def test_invalid_query_never_sent(self, gateway, registry):
        report = ReportOrchestrator(gateway, registry)

        operation = await report.change_page(-1)

        assert operation.status == OperationStatus.IDLE
        assert operation.error_message == "Page index cannot be negative"
        gateway.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_load_failure_keeps_previous_records(self, gateway, registry, student_page):
        gateway.query.return_value = student_page
        report = ReportOrchestrator(gateway, registry)
        await report.load()

        gateway.query.side_effect = TransportError("Failed to load students", "report-load")
        operation = await report.change_page(1)

        assert operation.status == OperationStatus.FAILED
        assert operation.error_message == "Failed to load students"
        assert report.total_count == 41

    @pytest.mark.asyncio
    async def test_changes_during_load_coalesce(self, gateway, registry, release, blocking, student_page):
        """Query changes made while a load is in flight trigger one follow-up load"""
        gateway.query.side_effect = blocking(release, student_page)
        report = ReportOrchestrator(gateway, registry)

        first = asyncio.create_task(report.load())
        await asyncio.sleep(0)
        assert report.load_operation.busy

        pending = await report.change_page(1)
        assert pending.busy
        await report.change_page(3)

        release.set()
        operation = await first

        assert operation.status == OperationStatus.SUCCEEDED
        assert gateway.query.await_count == 2
        assert gateway.query.await_args.args[0].page_index == 3

    @pytest.mark.asyncio
    async def test_follow_up_load_survives_cancelled_caller(
        self, gateway, registry, release, blocking, student_page
    ):
        gateway.query.side_effect = blocking(release, student_page)
        report = ReportOrchestrator(gateway, registry)

        first = asyncio.create_task(report.load())
        await asyncio.sleep(0)
        await report.change_page(3)

        first.cancel()
        await asyncio.gather(first, return_exceptions=True)
        assert first.cancelled()

        release.set()
        await asyncio.sleep(0.05)

        assert gateway.query.await_count == 2
        assert gateway.query.await_args.args[0] == QuerySpec(page_index=3, page_size=10)
        assert report.load_operation.status == OperationStatus.SUCCEEDED
        assert not registry.is_running("report-load")

    @pytest.mark.asyncio
    async def test_close_drops_pending_follow_up(
        self, gateway, registry, release, blocking, student_page
    ):
        gateway.query.side_effect = blocking(release, student_page)
        report = ReportOrchestrator(gateway, registry)

        first = asyncio.create_task(report.load())
        await asyncio.sleep(0)
        await report.change_page(3)
        await report.close()

        release.set()
        await first
        await asyncio.sleep(0.02)

        assert gateway.query.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_change_during_load_rejected_locally(
        self, gateway, registry, release, blocking, student_page
    ):
        gateway.query.side_effect = blocking(release, student_page)
        report = ReportOrchestrator(gateway, registry)

        first = asyncio.create_task(report.load())
        await asyncio.sleep(0)
        await report.change_page(-1)

        release.set()
        operation = await first

        assert gateway.query.await_count == 1
        assert operation.status == OperationStatus.IDLE
        assert operation.error_message == "Page index cannot be negative"

    @pytest.mark.asyncio
    async def test_export_saves_download(self, gateway, registry, tmp_path):
        gateway.export_data.return_value = ExportResult(ExportFormat.CSV, b"studentId\n1\n", "text/csv")
        report = ReportOrchestrator(gateway, registry, download_dir=tmp_path)

        operation = await report.export("csv")

        assert operation.status == OperationStatus.SUCCEEDED
        assert operation.notice == f"Exported in {operation.elapsed_display}!"
        saved = tmp_path / "students.csv"
        assert saved.read_bytes() == b"studentId\n1\n"
        assert operation.result.saved_path == str(saved)
        gateway.export_data.assert_awaited_once_with(ExportFormat.CSV)

    @pytest.mark.asyncio
    async def test_export_without_save(self, gateway, registry, tmp_path):
        gateway.export_data.return_value = ExportResult(ExportFormat.PDF, b"%PDF-1.4")
        report = ReportOrchestrator(gateway, registry, download_dir=tmp_path / "unused")

        operation = await report.export(ExportFormat.PDF, save=False)

        assert operation.result.saved_path is None
        assert not (tmp_path / "unused").exists()

    @pytest.mark.asyncio
    async def test_export_failure(self, gateway, registry):
        gateway.export_data.side_effect = RuntimeError("socket closed")
        report = ReportOrchestrator(gateway, registry)

        operation = await report.export(ExportFormat.EXCEL)

        assert operation.status == OperationStatus.FAILED
        assert operation.error_message == "Export failed"
        assert not registry.is_running("report-export")

    @pytest.mark.asyncio
    async def test_export_save_failure(self, gateway, registry, tmp_path):
        blocked = tmp_path / "blocked"
        blocked.write_text("not a directory")
        gateway.export_data.return_value = ExportResult(ExportFormat.CSV, b"id\n")
        report = ReportOrchestrator(gateway, registry, download_dir=blocked)

        operation = await report.export(ExportFormat.CSV)

        assert operation.status == OperationStatus.FAILED
        assert operation.error_message == "Export failed"

    @pytest.mark.asyncio
    async def test_load_and_export_run_concurrently(
        self, gateway, registry, release, blocking, student_page
    ):
        gateway.query.side_effect = blocking(release, student_page)
        gateway.export_data.side_effect = blocking(release, ExportResult(ExportFormat.PDF, b"%PDF"))
        report = ReportOrchestrator(gateway, registry)

        load = asyncio.create_task(report.load())
        export = asyncio.create_task(report.export(ExportFormat.PDF, save=False))
        await asyncio.sleep(0)

        assert report.load_operation.busy
        assert report.export_operation.busy
        assert registry.is_running("report-load")
        assert registry.is_running("report-export")

        release.set()
        load_operation, export_operation = await asyncio.gather(load, export)

        assert load_operation.status == OperationStatus.SUCCEEDED
        assert export_operation.status == OperationStatus.SUCCEEDED
        await registry.close()


class TestTeardown:
    """Tests for closing an orchestrator with work in flight"""

    @pytest.mark.asyncio
    async def test_late_response_ignored(self, gateway, registry, release, blocking):
        gateway.generate.side_effect = blocking(release, GenerateResult("out/students.xlsx"))
        orchestrator = GenerateOrchestrator(gateway, registry)
        await orchestrator.open()

        task = asyncio.create_task(orchestrator.generate(10))
        await asyncio.sleep(0)
        await orchestrator.close()

        assert orchestrator.disposed
        assert registry.state("generate") == TimerState.zero()

        release.set()
        operation = await task

        assert operation.status == OperationStatus.BUSY
        assert operation.result is None
        assert registry.state("generate") == TimerState.zero()
        assert not registry.is_running("generate")

    @pytest.mark.asyncio
    async def test_closed_orchestrator_ignores_actions(self, gateway, registry):
        orchestrator = GenerateOrchestrator(gateway, registry)
        await orchestrator.close()

        operation = await orchestrator.generate(10)

        assert operation.status == OperationStatus.IDLE
        gateway.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_resets_all_owned_stopwatches(self, gateway, registry, student_page):
        gateway.query.return_value = student_page
        gateway.export_data.return_value = ExportResult(ExportFormat.CSV, b"id\n")
        report = ReportOrchestrator(gateway, registry)
        await report.open()
        await report.export(ExportFormat.CSV, save=False)

        await report.close()

        assert registry.state("report-load") == TimerState.zero()
        assert registry.state("report-export") == TimerState.zero()


class TestTimerBinding:
    """Tests for live stopwatch state on the orchestrator"""

    @pytest.mark.asyncio
    async def test_listener_sees_running_then_final_state(self, gateway, registry, delayed):
        gateway.generate.side_effect = delayed(0.05, GenerateResult("out/students.xlsx"))
        updates = []

        async with GenerateOrchestrator(gateway, registry) as orchestrator:
            orchestrator.add_listener(lambda stage, state: updates.append((stage, state)))
            operation = await orchestrator.generate(10)
            await asyncio.sleep(0.02)

            assert any(state.running for _, state in updates)
            stage, final = updates[-1]
            assert stage is Stage.GENERATE
            assert not final.running
            assert final.display_text == operation.elapsed_display
            assert orchestrator.timer_state == final

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, gateway, registry):
        gateway.generate.return_value = GenerateResult("x.xlsx")
        calls = []

        async with GenerateOrchestrator(gateway, registry) as orchestrator:
            remove = orchestrator.add_listener(lambda stage, state: calls.append(state))
            remove()
            await orchestrator.generate(10)
            await asyncio.sleep(0.02)

        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_updates(self, gateway, registry):
        gateway.generate.return_value = GenerateResult("x.xlsx")
        seen = []

        def broken(stage, state):
            raise ValueError("render failed")

        async with GenerateOrchestrator(gateway, registry) as orchestrator:
            orchestrator.add_listener(broken)
            orchestrator.add_listener(lambda stage, state: seen.append(state))
            await orchestrator.generate(10)
            await asyncio.sleep(0.02)

        assert seen
        assert not seen[-1].running

    @pytest.mark.asyncio
    async def test_report_binds_both_stopwatches(self, gateway, registry, student_page):
        gateway.query.return_value = student_page
        report = ReportOrchestrator(gateway, registry)
        await report.open()
        await asyncio.sleep(0.02)

        assert set(report.timer_states) == {Stage.REPORT_LOAD, Stage.REPORT_EXPORT}
        assert report.load_timer_state.display_text == report.load_operation.elapsed_display
        assert report.export_timer_state == TimerState.zero()
        await report.close()


class TestTimerlessRegistry:
    """Orchestrators work unchanged without stopwatches"""

    @pytest.mark.asyncio
    async def test_elapsed_always_zero(self, gateway, delayed):
        gateway.generate.side_effect = delayed(0.02, GenerateResult("out/students.xlsx"))
        orchestrator = GenerateOrchestrator(gateway, NullStopwatchRegistry())

        operation = await orchestrator.generate(10)

        assert operation.status == OperationStatus.SUCCEEDED
        assert operation.elapsed_display == "0.000s"
        assert operation.notice == "Excel file generated in 0.000s!"


class TestHistory:
    """Tests for the per-orchestrator run history"""

    @pytest.mark.asyncio
    async def test_history_records_outcomes(self, gateway, registry):
        gateway.generate.side_effect = [
            GenerateResult("out/a.xlsx"),
            RemoteServiceError("Disk full", "generate", 500),
        ]
        orchestrator = GenerateOrchestrator(gateway, registry, history_size=5)

        await orchestrator.generate(10)
        await orchestrator.generate(20)

        history = orchestrator.history
        assert [m.success for m in history] == [True, False]
        assert history[0].metadata["count"] == 10
        assert history[1].error == "Disk full"
        assert "elapsedDisplay" in history[0].metadata

        data = orchestrator.to_dict()
        assert data["operation"]["status"] == "failed"
        assert len(data["history"]) == 2

    @pytest.mark.asyncio
    async def test_history_bounded(self, gateway, registry):
        gateway.generate.return_value = GenerateResult("out/a.xlsx")
        orchestrator = GenerateOrchestrator(gateway, registry, history_size=2)

        for _ in range(4):
            await orchestrator.generate(10)

        assert len(orchestrator.history) == 2


class TestReportScenarios:
    """End-to-end report flows against the gateway double"""

    @pytest.mark.asyncio
    async def test_filtered_page_with_no_matches(self, gateway, registry):
        gateway.query.return_value = StudentPage(records=[], total_count=0)
        report = ReportOrchestrator(gateway, registry)
        report.query = QuerySpec(page_index=2, page_size=10, id_filter="S123")

        operation = await report.load()

        assert operation.status == OperationStatus.SUCCEEDED
        assert report.records == []
        assert report.total_count == 0
        gateway.query.assert_awaited_once_with(
            QuerySpec(page_index=2, page_size=10, id_filter="S123")
        )
