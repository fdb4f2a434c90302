"""Pydantic schemas for validation and serialization."""

from adstudio.schemas.job import (
    ExtendRequest,
    JobSpec,
    JobView,
    MediaAsset,
    OperationView,
    SceneSpec,
    SceneView,
)

__all__ = [
    "ExtendRequest",
    "JobSpec",
    "JobView",
    "MediaAsset",
    "OperationView",
    "SceneSpec",
    "SceneView",
]
