"""Backoff policy for retrying classified remote failures.

The policy is pure and stateless: given a failure class and the number of
retries already consumed for that class, it answers Retry(after=...) or
GiveUp. Attempt counters live on the Job (RetryState) or, for start calls,
on a per-call PolicyRetryController.

Retry Curves:
    delay(attempt) = base * multiplier ** attempt, capped by max_delay
    attempt counts retries already consumed (0 for the first retry)
    TRANSIENT and QUOTA_EXCEEDED have independent curves and budgets
    PERMANENT and UNKNOWN always GiveUp without consuming budget

Example (quota curve base=30s, multiplier=2, max_attempts=3):
    attempt 0 → Retry(30s), 1 → Retry(60s), 2 → Retry(120s), 3 → GiveUp
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception

from adstudio.config import BackoffSettings, OrchestratorSettings
from adstudio.models import FailureClass, RawFailure
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class Retry:
    """Retry after the given number of seconds."""

    after: float


@dataclass(frozen=True)
class GiveUp:
    """Stop retrying; reason is suitable for a user-facing summary."""

    reason: str


Decision = Retry | GiveUp


@dataclass(frozen=True)
class BackoffCurve:
    """Geometric delay curve with a retry ceiling."""

    base_delay: float
    multiplier: float
    max_attempts: int

    @classmethod
    def from_settings(cls, settings: BackoffSettings) -> "BackoffCurve":
        return cls(
            base_delay=settings.base_delay_seconds,
            multiplier=settings.multiplier,
            max_attempts=settings.max_attempts,
        )


@dataclass(frozen=True)
class BackoffPolicy:
    """Per-class retry curves.

    Attributes:
        transient: Curve for TRANSIENT failures.
        quota: Curve for QUOTA_EXCEEDED failures (longer base, fewer attempts).
        max_delay: Cap on any single delay, None for uncapped.
    """

    transient: BackoffCurve = field(default_factory=lambda: BackoffCurve(5.0, 1.5, 10))
    quota: BackoffCurve = field(default_factory=lambda: BackoffCurve(30.0, 2.0, 5))
    max_delay: float | None = 600.0

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> "BackoffPolicy":
        return cls(
            transient=BackoffCurve.from_settings(settings.transient_backoff),
            quota=BackoffCurve.from_settings(settings.quota_backoff),
            max_delay=settings.backoff_max_delay_seconds,
        )

    def curve_for(self, failure_class: FailureClass) -> BackoffCurve | None:
        if failure_class is FailureClass.TRANSIENT:
            return self.transient
        if failure_class is FailureClass.QUOTA_EXCEEDED:
            return self.quota
        return None

    def decide(self, failure_class: FailureClass, attempt: int) -> Decision:
        """Decide whether to retry after a failure.

        Args:
            failure_class: Classification of the latest failure.
            attempt: Retries of this class already consumed.

        Returns:
            Retry with the delay in seconds, or GiveUp with a reason.
        """
        curve = self.curve_for(failure_class)
        if curve is None:
            return GiveUp(f"{failure_class.value} failures are not retried")
        if attempt >= curve.max_attempts:
            return GiveUp(f"gave up after {curve.max_attempts} {failure_class.value} retries")

        delay = curve.base_delay * curve.multiplier**attempt
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return Retry(after=delay)


class PolicyRetryController:
    """Drives tenacity's retry/wait hooks from a BackoffPolicy.

    One controller per guarded call: it owns the per-class attempt counters
    for that call only. The retry predicate classifies the exception (firing
    the credential-refresh signal on PERMANENT), asks the policy, and caches
    the delay that the wait hook hands back to tenacity.

    Usage:
        controller = PolicyRetryController(policy, classifier, label="start:video")
        async for attempt in controller.retrying():
            with attempt:
                handle = await capability.start_operation(kind, params)
    """

    def __init__(
        self,
        policy: BackoffPolicy,
        classify: Callable[[RawFailure], FailureClass],
        label: str = "",
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.policy = policy
        self.classify = classify
        self.label = label
        self.sleep = sleep
        self.attempts: dict[FailureClass, int] = {}
        self.last_failure: RawFailure | None = None
        self.last_class: FailureClass | None = None
        self.last_decision: Decision | None = None

    def should_retry(self, exc: BaseException) -> bool:
        if not isinstance(exc, Exception):
            return False

        failure = RawFailure.from_exception(exc)
        failure_class = self.classify(failure)
        decision = self.policy.decide(failure_class, self.attempts.get(failure_class, 0))
        self.last_failure, self.last_class, self.last_decision = failure, failure_class, decision

        if isinstance(decision, GiveUp):
            log.warning(
                "remote_call_gave_up",
                call=self.label,
                failure_class=failure_class.value,
                reason=decision.reason,
                error=failure.message,
            )
            return False

        self.attempts[failure_class] = self.attempts.get(failure_class, 0) + 1
        log.info(
            "remote_call_retry_scheduled",
            call=self.label,
            failure_class=failure_class.value,
            attempt=self.attempts[failure_class],
            delay_seconds=decision.after,
        )
        return True

    def wait(self, retry_state: RetryCallState) -> float:
        if isinstance(self.last_decision, Retry):
            return self.last_decision.after
        return 0.0

    def retrying(self) -> AsyncRetrying:
        kwargs = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return AsyncRetrying(
            retry=retry_if_exception(self.should_retry),
            wait=self.wait,
            reraise=True,
            **kwargs,
        )
