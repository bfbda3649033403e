"""
Unit Tests for Error Handling

Classification, graceful-degradation helpers and retry.
"""

import asyncio
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))

from persona.core.error_handling import (
    EmbeddingError,
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    IsolationViolation,
    SpeechSynthesisError,
    SynthesisTimeout,
    create_error_response,
    get_error_handler,
    log_and_return_error,
    retry_async,
)


@pytest.mark.unit
class TestClassification:

    @pytest.mark.parametrize("exception,category,severity", [
        (IsolationViolation(("a", "u1"), ("a", "u2")), ErrorCategory.ISOLATION, ErrorSeverity.FATAL),
        (SynthesisTimeout(3, 15.0), ErrorCategory.TIMEOUT, ErrorSeverity.WARNING),
        (EmbeddingError("down"), ErrorCategory.PROVIDER, ErrorSeverity.WARNING),
        (asyncio.TimeoutError(), ErrorCategory.TIMEOUT, ErrorSeverity.WARNING),
        (ConnectionError(), ErrorCategory.NETWORK, ErrorSeverity.WARNING),
        (ValueError("bad"), ErrorCategory.VALIDATION, ErrorSeverity.WARNING),
        (RuntimeError("odd"), ErrorCategory.UNKNOWN, ErrorSeverity.ERROR),
    ])
    def test_classify(self, exception, category, severity):
        assert ErrorHandler().classify_error(exception) == (category, severity)

    def test_context_captures_tenant_and_retriable(self):
        handler = ErrorHandler()
        error = SpeechSynthesisError("503", provider="elevenlabs", retriable=True, status_code=503)

        context = handler.create_context(error, operation="synthesize", avatar_id="a", user_id="u")

        assert context.is_retriable is True
        assert context.avatar_id == "a"
        assert context.error_type == "SpeechSynthesisError"
        assert context.to_dict()["user_id"] == "u"

    def test_isolation_violation_message_names_both_tenants(self):
        error = IsolationViolation(("avatar-1", "user-1"), ("avatar-1", "user-2"), fragment_id="f1")

        assert "user-2" in str(error)
        assert "user-1" in str(error)
        assert error.fragment_id == "f1"


@pytest.mark.unit
class TestGracefulDegradation:

    def test_log_and_return_error_returns_default(self):
        result = log_and_return_error(EmbeddingError("down"), default_return=[], operation="embed")

        assert result == []
        assert get_error_handler().get_stats()["error_breakdown"] == {"provider.warning": 1}

    def test_create_error_response(self):
        response = create_error_response(ValueError("bad input"), operation="extract")

        assert response["success"] is False
        assert response["error"]["category"] == "validation"
        assert response["error"]["message"] == "bad input"


@pytest.mark.unit
class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_retries_retriable_then_succeeds(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise EmbeddingError("429", retriable=True, status_code=429)
            return "ok"

        with patch("persona.core.error_handling.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await retry_async(flaky, operation="embed", max_retries=3, backoff_seconds=0.5)

        assert result == "ok"
        assert len(attempts) == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_retriable_raises_immediately(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise EmbeddingError("401", retriable=False, status_code=401)

        with pytest.raises(EmbeddingError):
            await retry_async(broken, operation="embed")

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        async def always_down():
            attempts.append(1)
            raise EmbeddingError("503", retriable=True)

        with pytest.raises(EmbeddingError):
            await retry_async(always_down, operation="embed", max_retries=2, backoff_seconds=0.001)

        assert len(attempts) == 3
