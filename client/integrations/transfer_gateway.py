"""
Student Data Pipeline Service Client

The only component that talks to the remote pipeline service:
- Generate a synthetic Excel dataset (POST /generate?count=N)
- Convert an uploaded Excel file to CSV (POST /process, multipart "file")
- Ingest a CSV file into the store (POST /upload, multipart "file")
- Page through stored students (GET /students)
- Export stored students (GET /students/export/{excel|csv|pdf})

Each call is exactly one HTTP round trip. There is no retry and no timeout
beyond the configured transport default.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from config import get_settings
from errors import (
    ConfigurationError,
    EmptyFileError,
    InvalidCountError,
    InvalidResponseError,
    RemoteServiceError,
    RequestTimeoutError,
    TransferError,
    TransportError,
)
from models import (
    ConvertResult,
    ExportFormat,
    ExportResult,
    FilePayload,
    GenerateResult,
    IngestResult,
    QuerySpec,
    Stage,
    StudentPage,
)
from services.pipeline_logger import timed_request
from utils.query_builder import build_query_params

logger = logging.getLogger(__name__)
settings = get_settings()


def extract_error_message(response: httpx.Response) -> Optional[str]:
    """Return the service's own error message, if the body carries a non-empty one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message.strip():
            return message
    return None


class TransferGateway:
    """
    Async client for the student data pipeline service.

    Raises typed errors from ``errors`` on failure; never retries.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize gateway

        Args:
            base_url: Service API root (defaults to settings.api_base_url)
            timeout: Request timeout in seconds; None leaves requests unbounded
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Invalid service URL: {self.base_url}",
                setting="API_BASE_URL",
            )

        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

        logger.info(f"Initialized transfer gateway for {self.base_url}")

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-initialized HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._http_client

    async def _request(
        self,
        stage: Stage,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Issue one request and map failures to typed errors.

        Returns:
            The successful response

        Raises:
            RemoteServiceError: Non-success status
            RequestTimeoutError: Transport timed out
            TransportError: Service unreachable
        """
        fallback = stage.failure_message
        logger.debug(f"{method} {self.base_url}{path} ({stage.value})")

        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(fallback, stage.value, reason=str(e) or type(e).__name__)
        except httpx.TransportError as e:
            raise TransportError(fallback, stage.value, reason=str(e) or type(e).__name__)
        except httpx.HTTPError as e:
            logger.error(f"Request to {path} failed: {e}")
            raise TransferError(fallback, stage.value, details={"reason": str(e)})

        if response.status_code >= 400:
            message = extract_error_message(response) or fallback
            logger.warning(
                f"{stage.value} rejected by service: {response.status_code} - {message}"
            )
            raise RemoteServiceError(message, stage.value, response.status_code)

        return response

    def _json(self, stage: Stage, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise InvalidResponseError(stage.failure_message, stage.value, raw_response=response.text)
        if not isinstance(body, dict):
            raise InvalidResponseError(stage.failure_message, stage.value, raw_response=response.text)
        return body

    def _field(self, stage: Stage, body: Dict[str, Any], key: str, response: httpx.Response) -> Any:
        if key not in body:
            raise InvalidResponseError(stage.failure_message, stage.value, raw_response=response.text)
        return body[key]

    def _file_path(self, stage: Stage, body: Dict[str, Any], response: httpx.Response) -> str:
        path = self._field(stage, body, "filePath", response)
        if not isinstance(path, str) or not path.strip():
            raise InvalidResponseError(stage.failure_message, stage.value, raw_response=response.text)
        return path

    @staticmethod
    def _files(payload: FilePayload) -> Dict[str, Any]:
        return {"file": (payload.file_name, payload.content, payload.content_type)}

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @timed_request(Stage.GENERATE.value)
    async def generate(self, count: int) -> GenerateResult:
        """
        Ask the service to generate ``count`` synthetic students as Excel.

        Raises:
            InvalidCountError: If count is not a positive integer
        """
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise InvalidCountError(count)

        response = await self._request(
            Stage.GENERATE, "POST", "/generate", params={"count": count}
        )
        body = self._json(Stage.GENERATE, response)
        return GenerateResult(file_path=self._file_path(Stage.GENERATE, body, response))

    @timed_request(Stage.CONVERT.value)
    async def convert(self, payload: FilePayload) -> ConvertResult:
        """Upload an Excel workbook and get back the path of the normalized CSV."""
        if payload.is_empty():
            raise EmptyFileError(Stage.CONVERT.value, payload.file_name)

        response = await self._request(
            Stage.CONVERT, "POST", "/process", files=self._files(payload)
        )
        body = self._json(Stage.CONVERT, response)
        return ConvertResult(file_path=self._file_path(Stage.CONVERT, body, response))

    @timed_request(Stage.INGEST.value)
    async def ingest(self, payload: FilePayload) -> IngestResult:
        """Upload a CSV file into the store."""
        if payload.is_empty():
            raise EmptyFileError(Stage.INGEST.value, payload.file_name)

        response = await self._request(
            Stage.INGEST, "POST", "/upload", files=self._files(payload)
        )
        body = self._json(Stage.INGEST, response)
        inserted = self._field(Stage.INGEST, body, "inserted", response)
        try:
            inserted_count = int(inserted)
        except (TypeError, ValueError):
            raise InvalidResponseError(Stage.INGEST.failure_message, Stage.INGEST.value, raw_response=response.text)
        if inserted_count < 0:
            raise InvalidResponseError(Stage.INGEST.failure_message, Stage.INGEST.value, raw_response=response.text)
        return IngestResult(inserted_count=inserted_count)

    @timed_request(Stage.REPORT_LOAD.value)
    async def query(self, spec: QuerySpec) -> StudentPage:
        """Fetch one page of students matching the query's filters."""
        params = build_query_params(spec)
        response = await self._request(
            Stage.REPORT_LOAD, "GET", "/students", params=params
        )
        body = self._json(Stage.REPORT_LOAD, response)
        try:
            return StudentPage.from_dict(body)
        except (KeyError, TypeError, ValueError):
            raise InvalidResponseError(
                Stage.REPORT_LOAD.failure_message, Stage.REPORT_LOAD.value, raw_response=response.text
            )

    @timed_request(Stage.REPORT_EXPORT.value)
    async def export_data(self, export_format: ExportFormat) -> ExportResult:
        """Download every stored student in the given format."""
        export_format = ExportFormat(export_format)
        response = await self._request(
            Stage.REPORT_EXPORT, "GET", f"/students/export/{export_format.value}"
        )
        return ExportResult(
            format=export_format,
            content=response.content,
            content_type=response.headers.get("content-type"),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client"""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            logger.info("Transfer gateway closed")

    async def __aenter__(self) -> "TransferGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
