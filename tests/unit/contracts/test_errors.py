"""Tests for the error taxonomy and HTTP status classification."""

import pytest

from plinth.contracts import (
    CallTimeoutError,
    ClientError,
    ConfigurationError,
    ErrorClassification,
    RateLimitedError,
    SchemaMismatchError,
    ServerError,
    StepError,
    TransportError,
    UnexpectedError,
    classify_exception,
    error_for_status,
    is_retryable,
)


class TestErrorForStatus:
    def test_429_is_rate_limited_and_retryable(self) -> None:
        error = error_for_status(429, "slow down", provider="search")

        assert isinstance(error, RateLimitedError)
        assert error.classification is ErrorClassification.RATE_LIMITED
        assert error.retryable is True
        assert error.status_code == 429

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 529, 599])
    def test_5xx_is_server_error_and_retryable(self, status: int) -> None:
        error = error_for_status(status, "boom", provider="generation")

        assert isinstance(error, ServerError)
        assert is_retryable(error)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_other_4xx_is_client_error_and_fatal(self, status: int) -> None:
        error = error_for_status(status, "bad", provider="generation")

        assert isinstance(error, ClientError)
        assert not is_retryable(error)

    @pytest.mark.parametrize("status", [302, 600, 199])
    def test_unrecognized_status_is_unexpected(self, status: int) -> None:
        error = error_for_status(status, "odd", provider="search")

        assert isinstance(error, UnexpectedError)
        assert not error.retryable

    def test_carries_provider_context(self) -> None:
        error = error_for_status(
            503,
            "unavailable",
            provider="search",
            provider_message="upstream overloaded",
            request_id="req-1",
        )

        assert error.to_dict() == {
            "classification": "server",
            "provider": "search",
            "status_code": 503,
            "provider_message": "upstream overloaded",
            "request_id": "req-1",
        }


class TestClassification:
    @pytest.mark.parametrize(
        ("error", "retryable"),
        [
            (ConfigurationError("no key", provider="generation"), False),
            (TransportError("dns", provider="search"), True),
            (CallTimeoutError("slow", provider="search"), True),
            (RateLimitedError("429", provider="search"), True),
            (ServerError("500", provider="search"), True),
            (ClientError("400", provider="search"), False),
            (UnexpectedError("?", provider="search"), False),
            (SchemaMismatchError("bad row"), False),
        ],
    )
    def test_retryable_flag_follows_classification(self, error: Exception, retryable: bool) -> None:
        assert is_retryable(error) is retryable

    def test_foreign_exceptions_are_unexpected(self) -> None:
        assert classify_exception(KeyError("x")) is ErrorClassification.UNEXPECTED
        assert not is_retryable(ValueError("nope"))

    def test_classification_ignores_message_text(self) -> None:
        # A fatal error mentioning "timeout" stays fatal
        error = ClientError("request timeout parameter invalid", provider="generation", status_code=400)

        assert classify_exception(error) is ErrorClassification.CLIENT


class TestStepError:
    def test_from_provider_error_includes_detail(self) -> None:
        error = RateLimitedError(
            "search returned HTTP 429",
            provider="search",
            status_code=429,
            provider_message="quota exceeded",
            request_id="abc",
        )

        step_error = StepError.from_exception(error)

        assert step_error.code == "RATE_LIMITED"
        assert step_error.message == "search returned HTTP 429"
        assert step_error.detail == "provider=search status=429 request_id=abc quota exceeded"

    def test_from_foreign_exception(self) -> None:
        step_error = StepError.from_exception(RuntimeError())

        assert step_error.code == "UNEXPECTED"
        assert step_error.message == "RuntimeError"
        assert step_error.detail is None

    def test_to_dict_omits_missing_detail(self) -> None:
        assert StepError(code="CLIENT", message="bad").to_dict() == {"code": "CLIENT", "message": "bad"}
