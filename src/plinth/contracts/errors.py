"""Error taxonomy shared by the executor, provider clients and run store.

Every error carries an ErrorClassification set where it is raised. The
executor decides whether to retry from that value alone.

HTTP status mapping (error_for_status):
- 429: RateLimitedError (retryable)
- 500-599: ServerError (retryable)
- other 4xx: ClientError (fatal)
- anything else: UnexpectedError (fatal)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from plinth.contracts.enums import ErrorClassification


class PlinthError(Exception):
    """Base class for all classified errors."""

    classification: ErrorClassification = ErrorClassification.UNEXPECTED

    @property
    def retryable(self) -> bool:
        """Whether a retry might succeed."""
        return self.classification.retryable


class ProviderCallError(PlinthError):
    """Normalized failure of a single call to an external provider.

    Attributes:
        provider: Provider name ("generation", "search", ...)
        status_code: Transport status if the provider answered, else None
        provider_message: Message reported by the provider (or the transport)
        request_id: Request id of the outer executor call
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        provider_message: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.provider_message = provider_message
        self.request_id = request_id

    def to_dict(self) -> dict[str, Any]:
        """Structured form for logs and step error details."""
        return {
            "classification": self.classification.value,
            "provider": self.provider,
            "status_code": self.status_code,
            "provider_message": self.provider_message,
            "request_id": self.request_id,
        }


class ConfigurationError(ProviderCallError):
    """Required provider configuration (credentials, endpoint) is missing."""

    classification = ErrorClassification.CONFIGURATION


class TransportError(ProviderCallError):
    """Connection, DNS or protocol failure before a response arrived."""

    classification = ErrorClassification.TRANSPORT


class CallTimeoutError(ProviderCallError):
    """The attempt exceeded its timeout budget."""

    classification = ErrorClassification.TIMEOUT


class RateLimitedError(ProviderCallError):
    """Provider signalled throttling (HTTP 429)."""

    classification = ErrorClassification.RATE_LIMITED


class ServerError(ProviderCallError):
    """Provider-side failure (HTTP 5xx)."""

    classification = ErrorClassification.SERVER


class ClientError(ProviderCallError):
    """Malformed, unauthorized or unknown request (HTTP 4xx other than 429)."""

    classification = ErrorClassification.CLIENT


class UnexpectedError(ProviderCallError):
    """Anything the provider client could not classify more precisely."""

    classification = ErrorClassification.UNEXPECTED


class SchemaMismatchError(PlinthError):
    """Persisted data or database schema does not match what the code expects.

    Raised outside the step-status codec's tolerant path: a run row with an
    unknown status, a metrics blob that is not a JSON object, or a database
    missing required columns.
    """

    classification = ErrorClassification.SCHEMA_MISMATCH


def error_for_status(
    status_code: int,
    message: str,
    *,
    provider: str,
    provider_message: str | None = None,
    request_id: str | None = None,
) -> ProviderCallError:
    """Build the classified error for a non-success HTTP status."""
    error_type: type[ProviderCallError]
    if status_code == 429:
        error_type = RateLimitedError
    elif 500 <= status_code <= 599:
        error_type = ServerError
    elif 400 <= status_code <= 499:
        error_type = ClientError
    else:
        error_type = UnexpectedError
    return error_type(
        message,
        provider=provider,
        status_code=status_code,
        provider_message=provider_message,
        request_id=request_id,
    )


def classify_exception(error: BaseException) -> ErrorClassification:
    """Classification of an arbitrary exception.

    Unclassified exceptions are UNEXPECTED, which is never retried.
    """
    if isinstance(error, PlinthError):
        return error.classification
    return ErrorClassification.UNEXPECTED


def is_retryable(error: BaseException) -> bool:
    """Retry predicate used by the executor."""
    return classify_exception(error).retryable


@dataclass(frozen=True)
class StepError:
    """Structured failure recorded against a step or a run.

    Attributes:
        code: Stable machine-readable code (e.g. "RATE_LIMITED")
        message: Human-readable message
        detail: Optional extra context (provider message, status, request id)
    """

    code: str
    message: str
    detail: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException) -> StepError:
        """Normalize an exception raised by step work."""
        classification = classify_exception(error)
        detail: str | None = None
        if isinstance(error, ProviderCallError):
            parts = [f"provider={error.provider}"]
            if error.status_code is not None:
                parts.append(f"status={error.status_code}")
            if error.request_id is not None:
                parts.append(f"request_id={error.request_id}")
            if error.provider_message:
                parts.append(error.provider_message)
            detail = " ".join(parts)
        message = str(error) or type(error).__name__
        return cls(code=classification.value.upper(), message=message, detail=detail)

    def to_dict(self) -> dict[str, str]:
        """JSON-safe form; detail omitted when absent."""
        data = {"code": self.code, "message": self.message}
        if self.detail is not None:
            data["detail"] = self.detail
        return data
