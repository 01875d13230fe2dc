"""Exception hierarchy for purchase-order extraction processing."""

from pathlib import Path
from typing import Any, Optional


class POPipelineError(Exception):
    """Base exception for all purchase-order pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class TransientIOError(POPipelineError):
    """Raised for download, network or upstream API failures that may succeed on retry."""

    retryable = True

    def __init__(
        self,
        operation: str,
        message: str,
        original_error: Optional[Exception] = None,
        attempts: int = 1
    ) -> None:
        self.operation = operation
        self.original_error = original_error
        self.attempts = attempts

        full_message = f"{operation} failed: {message}"
        if original_error:
            full_message += f" (Original error: {original_error})"

        super().__init__(full_message, {"operation": operation, "attempts": attempts})


class ConfigurationMissingError(POPipelineError):
    """Raised when required merchant configuration is absent.

    Not retryable: an operator has to supply the configuration first.
    """

    def __init__(self, merchant_id: str, setting_name: str = "ai_settings", reason: str = "") -> None:
        self.merchant_id = merchant_id
        self.setting_name = setting_name

        message = f"Configuration '{setting_name}' missing for merchant {merchant_id}"
        if reason:
            message += f": {reason}"

        super().__init__(message, {"merchant_id": merchant_id, "setting_name": setting_name})


class MalformedExtractionError(POPipelineError):
    """Raised when the model returns an unparsable or schema-mismatched payload.

    The extraction client converts this into a zero-confidence result, it never
    escapes the component boundary.
    """

    def __init__(
        self,
        schema_name: str,
        reason: str,
        payload_preview: str = "",
        original_error: Optional[Exception] = None
    ) -> None:
        self.schema_name = schema_name
        self.reason = reason
        self.payload_preview = payload_preview[:200]
        self.original_error = original_error

        message = f"Malformed '{schema_name}' extraction: {reason}"
        super().__init__(message, {"schema_name": schema_name, "payload_preview": self.payload_preview})


class PreprocessingError(POPipelineError):
    """Raised when text preprocessing fails; callers fall back to raw text."""

    def __init__(self, step: str, original_error: Exception) -> None:
        self.step = step
        self.original_error = original_error
        super().__init__(f"Preprocessing step '{step}' failed: {original_error}", {"step": step})


class ExtractionError(POPipelineError):
    """Raised when an extraction call fails for a non-transient reason."""

    def __init__(
        self,
        schema_name: str,
        message: str,
        model_used: Optional[str] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        self.schema_name = schema_name
        self.model_used = model_used
        self.original_error = original_error

        full_message = f"Extraction '{schema_name}' failed: {message}"
        if model_used:
            full_message += f" (Model: {model_used})"
        if original_error:
            full_message += f" (Original error: {original_error})"

        details = {"schema_name": schema_name}
        if model_used:
            details["model_used"] = model_used

        super().__init__(full_message, details)


class ExtractionTimeoutError(POPipelineError):
    """Raised when a whole parse call exceeds its time budget."""

    retryable = True

    def __init__(self, workflow_id: str, timeout_seconds: float) -> None:
        self.workflow_id = workflow_id
        self.timeout_seconds = timeout_seconds
        message = f"Document parsing for workflow {workflow_id} timed out after {timeout_seconds:.0f}s"
        super().__init__(message, {"workflow_id": workflow_id, "timeout_seconds": timeout_seconds})


class DocumentError(POPipelineError):
    """Base class for document reading errors."""

    def __init__(
        self,
        source: Path | str,
        message: str,
        original_error: Optional[Exception] = None,
        details: Optional[dict[str, Any]] = None
    ) -> None:
        self.source = str(source)
        self.original_error = original_error

        full_message = f"Document processing failed for {self.source}: {message}"
        if original_error:
            full_message += f" (Original error: {original_error})"

        super().__init__(full_message, details)


class PDFTooLargeError(DocumentError):
    """Raised when a PDF exceeds the maximum allowed size."""

    def __init__(self, source: Path | str, file_size_mb: float, max_size_mb: float) -> None:
        message = f"PDF size ({file_size_mb:.1f}MB) exceeds maximum allowed size ({max_size_mb}MB)"
        super().__init__(
            source,
            message,
            details={"file_size_mb": file_size_mb, "max_size_mb": max_size_mb}
        )


class InvalidDocumentError(DocumentError):
    """Raised when a document is corrupted, empty or of an unsupported type."""

    def __init__(self, source: Path | str, reason: str = "Document is corrupted or invalid") -> None:
        super().__init__(source, reason)


class StageTransitionError(POPipelineError):
    """Raised when a workflow stage would move backwards within a run."""

    def __init__(self, workflow_id: str, current_stage: str, requested_stage: str) -> None:
        self.workflow_id = workflow_id
        self.current_stage = current_stage
        self.requested_stage = requested_stage
        message = (
            f"Workflow {workflow_id} cannot move from '{current_stage}' "
            f"back to '{requested_stage}'"
        )
        super().__init__(message, {"current_stage": current_stage, "requested_stage": requested_stage})


def is_retryable(error: BaseException) -> bool:
    """Decide whether the queue transport should re-attempt a failed job.

    Pipeline errors declare it themselves. Anything else is assumed to be an
    unexpected, possibly transient fault.
    """
    if isinstance(error, POPipelineError):
        return error.retryable
    return True


def wrap_exception(
    func_name: str,
    original_error: Exception,
    source: Optional[Path | str] = None,
    context: Optional[dict[str, Any]] = None
) -> POPipelineError:
    """Wrap generic exceptions in our typed hierarchy."""

    context = context or {}

    if isinstance(original_error, POPipelineError):
        return original_error

    if isinstance(original_error, (ConnectionError, TimeoutError)):
        return TransientIOError(func_name, "network failure", original_error)

    if isinstance(original_error, (FileNotFoundError, PermissionError)):
        return DocumentError(
            source or "unknown",
            f"File system error in {func_name}",
            original_error,
            context
        )

    wrapped = POPipelineError(
        f"Unexpected error in {func_name}: {original_error}",
        {**context, "function": func_name, "original_error": str(original_error)}
    )
    # Unclassified faults keep the queue's retry-by-default policy
    wrapped.retryable = True
    return wrapped


__all__ = [
    "POPipelineError",
    "TransientIOError",
    "ConfigurationMissingError",
    "MalformedExtractionError",
    "PreprocessingError",
    "ExtractionError",
    "ExtractionTimeoutError",
    "DocumentError",
    "PDFTooLargeError",
    "InvalidDocumentError",
    "StageTransitionError",
    "is_retryable",
    "wrap_exception",
]
