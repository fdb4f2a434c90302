"""AdStudio creative production orchestrator.

This package queues product-commercial jobs, starts their remote video and
voiceover renders, polls them to completion with classified retries, and
exposes the live job table to display collaborators.
"""

from adstudio.models import Job, JobStatus
from adstudio.schemas.job import JobSpec, JobView
from adstudio.services.orchestrator import ProductionOrchestrator

__all__ = [
    "Job",
    "JobSpec",
    "JobStatus",
    "JobView",
    "ProductionOrchestrator",
]
