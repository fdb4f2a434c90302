"""Pydantic schemas for job submission and read-only job projections.

Schema Naming Convention:
    - JobSpec: The frozen production request handed to the orchestrator
    - JobView: Read-only projection of a Job record for display collaborators
    - SceneView / OperationView: Nested projections inside JobView

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from adstudio.constants import DEFAULT_VOICE, STATUS_LABELS
from adstudio.models import JobStatus, OperationState

if TYPE_CHECKING:
    from adstudio.models import Job

AspectRatio = Literal["16:9", "9:16"]
VoiceName = Literal["Kore", "Puck", "Charon", "Fenrir", "Zephyr"]


class MediaAsset(BaseModel):
    """A product image chosen by the caller, inlined as base64."""

    model_config = ConfigDict(frozen=True)

    mime_type: str = Field(..., pattern=r"^image/[a-z0-9.+-]+$", examples=["image/png"])
    data: str = Field(..., min_length=1, description="Base64-encoded image bytes")


class SceneSpec(BaseModel):
    """One segment of a multi-scene production."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    scene_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    visual_instruction: str = Field(..., min_length=1)
    voiceover_text: str | None = None


class JobSpec(BaseModel):
    """Frozen input of a production job.

    A new production needs at least one product image. An extension
    (extend_from set) reuses an existing video instead and needs none.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200, examples=["Aurora Headphones"])
    description: str = Field(default="", max_length=4000)
    images: tuple[MediaAsset, ...] = ()
    aspect_ratio: AspectRatio = "16:9"
    website_url: str | None = None
    voice: VoiceName = DEFAULT_VOICE
    intro_text: str | None = None
    outro_text: str | None = None
    scenes: tuple[SceneSpec, ...] = ()
    extend_from: str | None = Field(
        default=None, description="Video reference of a completed job to extend"
    )
    extend_prompt: str | None = None

    @model_validator(mode="after")
    def validate_media(self) -> "JobSpec":
        if self.extend_from is None and not self.images:
            raise ValueError("A product image is mandatory for ad generation")
        scene_ids = [scene.scene_id for scene in self.scenes]
        if len(scene_ids) != len(set(scene_ids)):
            raise ValueError("scene_id values must be unique")
        if self.extend_from is not None and self.scenes:
            raise ValueError("An extension cannot carry scenes")
        return self


class ExtendRequest(BaseModel):
    """Body of POST /api/v1/jobs/{id}/extend."""

    prompt: str = Field(default="Continue the action naturally.", min_length=1)


class OperationView(BaseModel):
    """Read-only projection of an OperationHandle."""

    kind: str
    state: OperationState
    mandatory: bool
    poll_attempts: int
    last_poll_at: datetime | None = None
    progress_trace: list[str] = []


class SceneView(BaseModel):
    """Status of one scene, derived from the sub-tasks scoped to it."""

    scene_id: str
    parent_job_id: str
    status: JobStatus
    result: dict[str, Any] = {}
    error: str | None = None


class JobView(BaseModel):
    """Read-only projection of a Job record for display collaborators."""

    id: str
    name: str
    status: JobStatus
    label: str
    plan_ready: bool = False
    operations: dict[str, OperationView] = {}
    scenes: list[SceneView] = []
    result: dict[str, Any] = {}
    error: str | None = None
    submitted_at: datetime
    updated_at: datetime
    removed: bool = False

    @classmethod
    def from_job(cls, job: "Job", removed: bool = False) -> "JobView":
        operations = {}
        for name, handle in job.operation_handles.items():
            planned = job.subtask(name)
            operations[name] = OperationView(
                kind=handle.kind.value,
                state=handle.state,
                mandatory=planned.mandatory if planned else False,
                poll_attempts=handle.poll_attempts,
                last_poll_at=handle.last_poll_at,
                progress_trace=list(handle.progress_trace),
            )
        return cls(
            id=job.id,
            name=job.spec.name,
            status=job.status,
            label=STATUS_LABELS[job.status.value],
            plan_ready=job.plan_ready,
            operations=operations,
            scenes=_scene_views(job),
            result=dict(job.result),
            error=job.error,
            submitted_at=job.submitted_at,
            updated_at=job.updated_at,
            removed=removed,
        )


def _scene_views(job: "Job") -> list[SceneView]:
    views: dict[str, SceneView] = {}
    for planned in job.plan:
        if planned.scene_id is None:
            continue
        view = views.setdefault(
            planned.scene_id,
            SceneView(scene_id=planned.scene_id, parent_job_id=job.id, status=JobStatus.PENDING),
        )
        if planned.result_key in job.result:
            view.result[planned.result_key] = job.result[planned.result_key]
        if not planned.mandatory:
            continue
        handle = job.operation_handles.get(planned.name)
        if handle is None:
            view.status = JobStatus.FAILED if job.status is JobStatus.FAILED else JobStatus.PENDING
        elif handle.state is OperationState.SUCCEEDED:
            view.status = JobStatus.COMPLETED
        elif handle.state is OperationState.RUNNING:
            waiting = job.retry_for(planned.name).waiting_on_quota
            view.status = JobStatus.QUOTA_WAIT if waiting else JobStatus.POLLING
        else:
            view.status = JobStatus.FAILED
            view.error = job.error
    return list(views.values())
