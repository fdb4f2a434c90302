"""Tests for remote failure classification.

Tests cover:
- Status-code classification (P0)
- Message-text classification when no status code is known (P0)
- Totality: malformed input yields UNKNOWN instead of raising (P1)
- Credential refresh notification on PERMANENT (P1)
"""

from unittest.mock import MagicMock

import pytest

from adstudio.exceptions import RemoteOperationError
from adstudio.models import FailureClass, RawFailure
from adstudio.services.error_classifier import ErrorClassifier, classify_failure


class TestClassifyFailure:
    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [
            (429, FailureClass.QUOTA_EXCEEDED),
            (401, FailureClass.PERMANENT),
            (403, FailureClass.PERMANENT),
            (404, FailureClass.PERMANENT),
            (500, FailureClass.TRANSIENT),
            (503, FailureClass.TRANSIENT),
            (504, FailureClass.TRANSIENT),
        ],
    )
    def test_status_codes(self, status_code: int, expected: FailureClass) -> None:
        """[P0] Known HTTP status codes map directly to a class."""
        assert classify_failure(RawFailure("boom", status_code=status_code)) is expected

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Resource has been exhausted (e.g. check quota).", FailureClass.QUOTA_EXCEEDED),
            ("Rate limit reached for requests", FailureClass.QUOTA_EXCEEDED),
            ("Requested entity was not found.", FailureClass.PERMANENT),
            ("API key not valid. Please pass a valid API key.", FailureClass.PERMANENT),
            ("The model is overloaded. Please try again later.", FailureClass.TRANSIENT),
            ("Service Unavailable", FailureClass.TRANSIENT),
            ("Deadline expired before operation could complete.", FailureClass.TRANSIENT),
            ("An internal error has occurred.", FailureClass.TRANSIENT),
            ("Video violates the safety policy.", FailureClass.UNKNOWN),
        ],
    )
    def test_message_text(self, message: str, expected: FailureClass) -> None:
        """[P0] Without a status code the message text decides."""
        assert classify_failure(RawFailure(message)) is expected

    def test_quota_wins_over_unavailable_text(self) -> None:
        """[P1] A 429 body that also says "unavailable" is still a quota failure."""
        failure = RawFailure("429 Too Many Requests: temporarily unavailable")
        assert classify_failure(failure) is FailureClass.QUOTA_EXCEEDED

    def test_service_status_string_is_used(self) -> None:
        """[P1] RESOURCE_EXHAUSTED status alone classifies as quota."""
        failure = RawFailure("", status="RESOURCE_EXHAUSTED")
        assert classify_failure(failure) is FailureClass.QUOTA_EXCEEDED

    def test_malformed_input_is_unknown(self) -> None:
        """[P1] Garbage never raises."""
        failure = RawFailure(message=None, status_code="not-an-int")  # type: ignore[arg-type]
        assert classify_failure(failure) is FailureClass.UNKNOWN

    def test_from_remote_operation_error(self) -> None:
        """[P1] RawFailure.from_exception keeps status code and status."""
        exc = RemoteOperationError("quota", status_code=429, status="RESOURCE_EXHAUSTED")
        failure = RawFailure.from_exception(exc)
        assert failure.status_code == 429
        assert failure.status == "RESOURCE_EXHAUSTED"
        assert classify_failure(failure) is FailureClass.QUOTA_EXCEEDED


class TestErrorClassifier:
    def test_permanent_fires_notifier_once(self) -> None:
        """[P1] One PERMANENT classification, one notification."""
        notifier = MagicMock()
        classifier = ErrorClassifier(on_permanent=notifier)

        result = classifier(RawFailure("Requested entity was not found."))

        assert result is FailureClass.PERMANENT
        notifier.assert_called_once()

    def test_other_classes_do_not_notify(self) -> None:
        notifier = MagicMock()
        classifier = ErrorClassifier(on_permanent=notifier)

        classifier(RawFailure("overloaded"))
        classifier(RawFailure("boom", status_code=429))

        notifier.assert_not_called()

    def test_notifier_errors_are_contained(self) -> None:
        """[P2] A failing notifier does not break classification."""
        classifier = ErrorClassifier(on_permanent=MagicMock(side_effect=RuntimeError("x")))
        assert classifier(RawFailure("permission denied")) is FailureClass.PERMANENT
