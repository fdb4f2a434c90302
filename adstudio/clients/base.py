"""Capability contracts the orchestrator depends on.

The orchestrator only knows these abstract boundaries; concrete wire
formats belong to the clients that implement them (see clients/gemini.py).

- GenerationCapability.start_operation: start a remote long-running task
- GenerationCapability.poll_operation: check on it
- GenerationCapability.release_operation: forget a handle nobody will poll
- BriefWriter.write_brief: optional creative-direction step run at initiation

Failures of the call itself are raised (RemoteOperationError or any other
exception). A remote operation that finished with an error is reported as a
PollOutcome with done=True and a failure.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from adstudio.models import CreativeBrief, OperationHandle, OperationKind, RawFailure

if TYPE_CHECKING:
    from adstudio.schemas.job import JobSpec


@dataclass(frozen=True)
class PollOutcome:
    """Result of one poll call.

    Attributes:
        done: Whether the remote operation has finished.
        output: Output fields when done and successful (e.g. {"uri": ...}).
        failure: Remote error when done and unsuccessful.
    """

    done: bool
    output: Mapping[str, Any] | None = None
    failure: RawFailure | None = None


class GenerationCapability(Protocol):
    """Remote generation service (video, voice, extension)."""

    async def start_operation(
        self, kind: OperationKind, params: Mapping[str, Any]
    ) -> OperationHandle: ...

    async def poll_operation(self, handle: OperationHandle) -> PollOutcome: ...

    def release_operation(self, handle: OperationHandle) -> None:
        """Drop client-side state for a handle that will not be polled again."""


class BriefWriter(Protocol):
    """Derives creative direction from product facts."""

    async def write_brief(self, spec: "JobSpec") -> CreativeBrief: ...
