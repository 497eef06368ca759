"""
Pipeline Client Exception Hierarchy

Custom exceptions for the pipeline stages with recovery hints.
"""

from typing import Any, Dict, Optional


class PipelineClientError(Exception):
    """Base exception for all pipeline client errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recoveryHint"] = self.recovery_hint
        return result


class StageError(PipelineClientError):
    """Base exception for errors raised while running a pipeline stage"""

    def __init__(
        self,
        message: str,
        stage: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None
    ):
        super().__init__(message, details, recoverable, recovery_hint)
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["stage"] = self.stage
        return result


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(StageError):
    """Input rejected locally; the request never reaches the network"""

    def __init__(
        self,
        message: str,
        stage: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            stage=stage,
            details={"field": field, "value": value, **(details or {})},
            recoverable=True,
            recovery_hint="Check input values and try again"
        )


class FileNotSelectedError(ValidationError):
    """Convert/ingest triggered without a selected file"""

    def __init__(self, stage: str, file_kind: str):
        super().__init__(
            message=f"Please select {_article(file_kind)} {file_kind} file first",
            stage=stage,
            field="file",
            details={"fileKind": file_kind}
        )
        self.recovery_hint = f"Choose {_article(file_kind)} {file_kind} file and retry"


class EmptyFileError(ValidationError):
    """Selected file has no content"""

    def __init__(self, stage: str, file_name: Optional[str] = None):
        super().__init__(
            message=f"File is empty: {file_name}" if file_name else "File is empty",
            stage=stage,
            field="file",
            value=file_name
        )


class InvalidCountError(ValidationError):
    """Record count for generation is not a positive integer"""

    def __init__(self, count: Any):
        super().__init__(
            message="Record count must be a positive integer",
            stage="generate",
            field="count",
            value=count
        )


class InvalidQueryError(ValidationError):
    """Pagination values out of range"""

    def __init__(self, message: str, field: str, value: Any):
        super().__init__(
            message=message,
            stage="report-load",
            field=field,
            value=value
        )


# =============================================================================
# TRANSFER ERRORS
# =============================================================================

class TransferError(StageError):
    """Remote request failed"""

    def __init__(
        self,
        message: str,
        stage: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: str = "Check the pipeline service and trigger the action again"
    ):
        super().__init__(
            message=message,
            stage=stage,
            details={"statusCode": status_code, **(details or {})} if status_code else details,
            recoverable=True,
            recovery_hint=recovery_hint
        )
        self.status_code = status_code


class RemoteServiceError(TransferError):
    """Service answered with a non-success status"""

    def __init__(
        self,
        message: str,
        stage: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            stage=stage,
            status_code=status_code,
            details=details
        )


class TransportError(TransferError):
    """Service could not be reached"""

    def __init__(self, message: str, stage: str, reason: Optional[str] = None):
        super().__init__(
            message=message,
            stage=stage,
            details={"reason": reason} if reason else None,
            recovery_hint="Verify the pipeline service is running and reachable"
        )


class RequestTimeoutError(TransportError):
    """Transport gave up waiting for the service"""

    def __init__(self, message: str, stage: str, reason: Optional[str] = None):
        super().__init__(message=message, stage=stage, reason=reason)
        self.recovery_hint = "The service may still be working; check its output before retrying"


class InvalidResponseError(TransferError):
    """Success response body could not be interpreted"""

    def __init__(self, message: str, stage: str, raw_response: Optional[str] = None):
        super().__init__(
            message=message,
            stage=stage,
            details={"rawResponse": raw_response[:500] if raw_response else None},
            recovery_hint="Client and service versions may not match"
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(PipelineClientError):
    """Configuration error"""

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"setting": setting, **(details or {})},
            recoverable=False,
            recovery_hint="Check .env configuration file"
        )


def _article(word: str) -> str:
    return "an" if word[:1].lower() in "aeiou" else "a"
