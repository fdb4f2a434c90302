"""Shared pytest fixtures for orchestrator tests.

This module provides:
- FakeCapability: scripted GenerationCapability (start/poll per operation kind)
- RecordingSleep: injected sleep that records delays without waiting
- settings / orchestrator fixtures wired to the fakes
- make_spec / wait_for helpers
"""

import asyncio
import base64
from collections.abc import Callable, Mapping
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from adstudio.clients.base import PollOutcome
from adstudio.config import BackoffSettings, OrchestratorSettings
from adstudio.models import OperationHandle, OperationKind
from adstudio.schemas.job import JobSpec, MediaAsset
from adstudio.services.orchestrator import ProductionOrchestrator

PNG_BYTES = base64.b64encode(b"\x89PNG\r\n\x1a\nfake-image").decode()

Scripted = PollOutcome | BaseException


class FakeCapability:
    """Scripted generation service.

    Attributes:
        start_errors: Per kind, exceptions raised by successive start calls
            before a start succeeds.
        poll_scripts: Per kind, outcomes (PollOutcome or exception) returned by
            successive polls. The last entry repeats once the script runs out.
        poll_gates: Per kind, an Event each poll waits on before answering.
        start_gates: Per kind, an Event each start waits on before answering.
        released: Handles handed to release_operation, in call order.
    """

    def __init__(self) -> None:
        self.start_errors: dict[OperationKind, list[BaseException]] = {}
        self.poll_scripts: dict[OperationKind, list[Scripted]] = {}
        self.poll_gates: dict[OperationKind, asyncio.Event] = {}
        self.start_gates: dict[OperationKind, asyncio.Event] = {}
        self.start_calls: list[tuple[OperationKind, Mapping[str, Any]]] = []
        self.poll_calls: list[OperationHandle] = []
        self.released: list[OperationHandle] = []
        self._counter = 0

    def polls_for(self, kind: OperationKind) -> list[OperationHandle]:
        return [handle for handle in self.poll_calls if handle.kind is kind]

    async def start_operation(
        self, kind: OperationKind, params: Mapping[str, Any]
    ) -> OperationHandle:
        self.start_calls.append((kind, params))
        gate = self.start_gates.get(kind)
        if gate is not None:
            await gate.wait()
        errors = self.start_errors.get(kind)
        if errors:
            raise errors.pop(0)
        self._counter += 1
        return OperationHandle(remote_ref=f"operations/{kind.value}-{self._counter}", kind=kind)

    async def poll_operation(self, handle: OperationHandle) -> PollOutcome:
        self.poll_calls.append(handle)
        gate = self.poll_gates.get(handle.kind)
        if gate is not None:
            await gate.wait()
        script = self.poll_scripts.get(handle.kind)
        if not script:
            return PollOutcome(done=True, output={"uri": f"https://media.test/{handle.remote_ref}"})
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def release_operation(self, handle: OperationHandle) -> None:
        self.released.append(handle)


class RecordingSleep:
    """Sleep replacement: records (task name, delay) and only yields control."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, float]] = []

    async def __call__(self, delay: float) -> None:
        task = asyncio.current_task()
        self.calls.append((task.get_name() if task else "", delay))
        await asyncio.sleep(0)

    def delays_for(self, prefix: str) -> list[float]:
        return [delay for name, delay in self.calls if name.startswith(prefix)]


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Settings with a 10s poll interval and a 3-retry quota budget (d=30s)."""
    return OrchestratorSettings(
        base_url="https://gemini.test/v1beta",
        video_model="veo-test",
        extend_video_model="veo-extend-test",
        voice_model="tts-test",
        brief_model="text-test",
        poll_interval_seconds=10.0,
        max_poll_attempts=90,
        transient_backoff=BackoffSettings(base_delay_seconds=5.0, multiplier=1.5, max_attempts=10),
        quota_backoff=BackoffSettings(base_delay_seconds=30.0, multiplier=2.0, max_attempts=3),
        backoff_max_delay_seconds=600.0,
        max_requests_per_second=100.0,
    )


@pytest.fixture
def capability() -> FakeCapability:
    return FakeCapability()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def credential_refresh() -> MagicMock:
    return MagicMock(name="credential_refresh")


@pytest_asyncio.fixture
async def orchestrator(capability, recording_sleep, settings, credential_refresh):
    """Started orchestrator wired to the fake capability and recording sleep.

    Yields:
        ProductionOrchestrator: shut down after the test.
    """
    orch = ProductionOrchestrator(
        capability,
        settings=settings,
        credential_refresh=credential_refresh,
        sleep=recording_sleep,
    )
    await orch.start()
    yield orch
    await orch.shutdown()


@pytest.fixture
def make_spec() -> Callable[..., JobSpec]:
    """Factory for a valid single-scene JobSpec."""

    def factory(**overrides: Any) -> JobSpec:
        fields: dict[str, Any] = {
            "name": "Aurora Headphones",
            "description": "Wireless noise-cancelling headphones",
            "images": [MediaAsset(mime_type="image/png", data=PNG_BYTES)],
        }
        fields.update(overrides)
        return JobSpec(**fields)

    return factory


@pytest.fixture
def wait_for() -> Callable[..., Any]:
    """Await until predicate() is truthy (real time, short timeout)."""

    async def waiter(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    return waiter
