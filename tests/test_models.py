"""Tests for domain records and job schemas.

Tests cover:
- Job.VALID_TRANSITIONS table (P0)
- OperationHandle progress trace bounds and dedupe (P1)
- RetryState independent budgets (P1)
- JobSpec validation rules (P0)
"""

import pytest
from pydantic import ValidationError

from adstudio.models import (
    FailureClass,
    Job,
    JobStatus,
    OperationHandle,
    OperationKind,
    RetryState,
    utcnow,
)
from adstudio.schemas.job import JobSpec, SceneSpec


class TestJobTransitions:
    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (JobStatus.PENDING, JobStatus.INITIATING, True),
            (JobStatus.PENDING, JobStatus.POLLING, False),
            (JobStatus.INITIATING, JobStatus.POLLING, True),
            (JobStatus.POLLING, JobStatus.QUOTA_WAIT, True),
            (JobStatus.QUOTA_WAIT, JobStatus.POLLING, True),
            (JobStatus.QUOTA_WAIT, JobStatus.COMPLETED, False),
            (JobStatus.POLLING, JobStatus.COMPLETED, True),
            (JobStatus.COMPLETED, JobStatus.PENDING, False),
            (JobStatus.FAILED, JobStatus.PENDING, True),
        ],
    )
    def test_transition_table(
        self, make_spec, current: JobStatus, target: JobStatus, allowed: bool
    ) -> None:
        """[P0] Only listed edges are allowed."""
        job = Job(id="j", spec=make_spec(), status=current)
        assert job.can_transition_to(target) is allowed

    def test_completed_is_terminal(self) -> None:
        assert Job.VALID_TRANSITIONS[JobStatus.COMPLETED] == frozenset()


class TestOperationHandle:
    def test_progress_trace_keeps_last_four(self) -> None:
        handle = OperationHandle("op", OperationKind.VIDEO)
        for note in ["a", "b", "c", "d", "e"]:
            handle = handle.with_note(note)
        assert handle.progress_trace == ("b", "c", "d", "e")

    def test_repeated_note_is_not_duplicated(self) -> None:
        handle = OperationHandle("op", OperationKind.VIDEO).with_note("a").with_note("a")
        assert handle.progress_trace == ("a",)

    def test_polled_counts_attempts(self) -> None:
        handle = OperationHandle("op", OperationKind.VIDEO).polled(utcnow()).polled(utcnow())
        assert handle.poll_attempts == 2
        assert handle.last_poll_at is not None


class TestRetryState:
    def test_budgets_are_independent(self) -> None:
        state = RetryState().consumed(FailureClass.QUOTA_EXCEEDED, utcnow())
        state = state.consumed(FailureClass.TRANSIENT, utcnow())

        assert state.attempts_for(FailureClass.QUOTA_EXCEEDED) == 1
        assert state.attempts_for(FailureClass.TRANSIENT) == 1
        assert state.attempts_for(FailureClass.PERMANENT) == 0
        assert state.waiting_on_quota is False


class TestJobSpec:
    def test_image_is_mandatory(self) -> None:
        """[P0] A new production needs a product image."""
        with pytest.raises(ValidationError, match="product image is mandatory"):
            JobSpec(name="Aurora")

    def test_extension_needs_no_image(self) -> None:
        spec = JobSpec(name="Aurora (extended)", extend_from="https://media.test/a.mp4")
        assert spec.images == ()

    def test_scene_ids_must_be_unique(self, make_spec) -> None:
        scene = SceneSpec(scene_id="a", visual_instruction="Close-up")
        with pytest.raises(ValidationError, match="unique"):
            make_spec(scenes=[scene, scene])

    def test_spec_is_frozen(self, make_spec) -> None:
        spec = make_spec()
        with pytest.raises(ValidationError):
            spec.name = "Changed"  # type: ignore[misc]
