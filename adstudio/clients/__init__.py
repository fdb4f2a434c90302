"""Clients for the remote generation service."""

from adstudio.clients.base import BriefWriter, GenerationCapability, PollOutcome

__all__ = [
    "BriefWriter",
    "GenerationCapability",
    "PollOutcome",
]
