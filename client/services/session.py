"""
Pipeline Session

Owns the client-side state for one page session: a stopwatch registry, the
transfer gateway and the stage orchestrators (one per page, created on first
use). Closing the session tears every orchestrator down and closes the HTTP
client.
"""

import logging
from typing import Dict, Optional, Type, TypeVar

from config import get_settings
from integrations.transfer_gateway import TransferGateway
from services.orchestrators import (
    ConvertOrchestrator,
    GenerateOrchestrator,
    IngestOrchestrator,
    ReportOrchestrator,
    StageOrchestrator,
)
from services.stopwatch import NullStopwatchRegistry, StopwatchRegistry

logger = logging.getLogger(__name__)
settings = get_settings()

O = TypeVar("O", bound=StageOrchestrator)


class PipelineSession:
    """
    Entry point for the presentation layer.

    Usage:
        async with PipelineSession() as session:
            generate = await session.generate()
            await generate.generate(1000)
    """

    def __init__(
        self,
        gateway: Optional[TransferGateway] = None,
        registry: Optional[StopwatchRegistry] = None,
    ):
        self.gateway = gateway or TransferGateway()
        if registry is None:
            registry = StopwatchRegistry() if settings.stopwatch_enabled else NullStopwatchRegistry()
        self.registry = registry
        self._orchestrators: Dict[Type[StageOrchestrator], StageOrchestrator] = {}
        self._closed = False

    async def _page(self, orchestrator_class: Type[O]) -> O:
        if self._closed:
            raise RuntimeError("Pipeline session is closed")
        orchestrator = self._orchestrators.get(orchestrator_class)
        if orchestrator is None:
            orchestrator = orchestrator_class(self.gateway, self.registry)
            self._orchestrators[orchestrator_class] = orchestrator
            await orchestrator.open()
            logger.info(f"Opened {orchestrator.stage.value} page")
        return orchestrator

    async def generate(self) -> GenerateOrchestrator:
        return await self._page(GenerateOrchestrator)

    async def convert(self) -> ConvertOrchestrator:
        return await self._page(ConvertOrchestrator)

    async def ingest(self) -> IngestOrchestrator:
        return await self._page(IngestOrchestrator)

    async def report(self) -> ReportOrchestrator:
        """Opening the report page also fetches its first page of students."""
        return await self._page(ReportOrchestrator)

    async def leave(self, orchestrator_class: Type[StageOrchestrator]) -> None:
        """Tear down one page; the next visit starts fresh."""
        orchestrator = self._orchestrators.pop(orchestrator_class, None)
        if orchestrator is not None:
            await orchestrator.close()
            logger.info(f"Closed {orchestrator.stage.value} page")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for orchestrator_class in list(self._orchestrators):
            await self.leave(orchestrator_class)
        await self.registry.close()
        await self.gateway.close()
        logger.info("Pipeline session closed")

    async def __aenter__(self) -> "PipelineSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# Global session instance
_pipeline_session: Optional[PipelineSession] = None


def get_pipeline_session() -> PipelineSession:
    """Get or create the process-wide pipeline session."""
    global _pipeline_session
    if _pipeline_session is None or _pipeline_session._closed:
        _pipeline_session = PipelineSession()
    return _pipeline_session
