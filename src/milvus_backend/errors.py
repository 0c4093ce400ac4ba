"""Exception hierarchy for the Milvus backend.

Every failure that reaches a caller is a subclass of `MilvusBackendError`.
Engine and embedding provider exceptions are chained as ``__cause__`` so the
original traceback is never lost.

Row-level conversion problems (missing id, undecodable metadata) are not
exceptions: see `milvus_backend.converter.SkippedRow`.
"""

from typing import Any


class MilvusBackendError(Exception):
    """Base exception for all errors raised by milvus_backend.

    Attributes:
        message: Human-readable error description
        context: Optional diagnostic details (collection name, mode, counts)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class ConfigurationInvalid(MilvusBackendError):
    """Configuration is missing a required field or is inconsistent."""


class EmbeddingUnavailable(MilvusBackendError):
    """A vector was needed but no embedding provider is configured."""


class EmbeddingError(MilvusBackendError):
    """The embedding provider failed."""


class EmbeddingShapeMismatch(MilvusBackendError):
    """The dense provider did not return one vector per input text."""


class SparseEmbeddingShapeMismatch(EmbeddingShapeMismatch):
    """The sparse provider did not return one vector per input text."""


class RequestBuildError(MilvusBackendError):
    """An engine request could not be built from the mode and options."""


class EngineExecutionError(MilvusBackendError):
    """The vector engine reported a failure."""


class DocumentConversionError(MilvusBackendError):
    """Documents could not be converted to or from engine rows."""
