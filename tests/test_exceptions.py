"""Tests for custom exception classes.

Tests cover:
- ConfigurationError message handling (P2)
- InvalidStateTransitionError attributes and formatting (P1)
- JobNotFoundError as a KeyError (P2)
- RemoteOperationError / PollTimeoutError attributes (P1)
"""

import pytest

from adstudio.exceptions import (
    ConfigurationError,
    InvalidStateTransitionError,
    JobNotFoundError,
    PollTimeoutError,
    RemoteOperationError,
)
from adstudio.models import JobStatus


class TestConfigurationError:
    def test_configuration_error_message_is_preserved(self) -> None:
        """[P2] Test ConfigurationError preserves error message."""
        with pytest.raises(ConfigurationError) as exc_info:
            raise ConfigurationError("Please select an API key to begin.")

        assert str(exc_info.value) == "Please select an API key to begin."


class TestInvalidStateTransitionError:
    def test_includes_both_statuses(self) -> None:
        """[P1] String form names the attempted edge.

        GIVEN: An attempted pending → completed transition
        WHEN: The error is formatted
        THEN: Both statuses appear and are kept as attributes
        """
        error = InvalidStateTransitionError(
            "Invalid transition", JobStatus.PENDING, JobStatus.COMPLETED
        )

        assert error.from_status is JobStatus.PENDING
        assert error.to_status is JobStatus.COMPLETED
        assert str(error) == "Invalid transition (from=pending, to=completed)"


class TestJobNotFoundError:
    def test_is_key_error(self) -> None:
        """[P2] Callers may catch it as KeyError."""
        with pytest.raises(KeyError):
            raise JobNotFoundError("abc")

    def test_message(self) -> None:
        assert str(JobNotFoundError("abc")) == "Job not found: abc"


class TestRemoteErrors:
    def test_remote_operation_error_attributes(self) -> None:
        error = RemoteOperationError("quota", status_code=429, status="RESOURCE_EXHAUSTED")

        assert str(error) == "quota"
        assert error.status_code == 429
        assert error.status == "RESOURCE_EXHAUSTED"

    def test_poll_timeout_message(self) -> None:
        error = PollTimeoutError("video", 90)

        assert error.attempts == 90
        assert "did not finish after 90 poll attempts" in str(error)
