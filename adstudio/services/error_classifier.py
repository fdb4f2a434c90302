"""Error classification for remote generation failures.

Maps a raw failure (status code and/or message) onto exactly one FailureClass:

    TRANSIENT       overloaded, unavailable, deadline exceeded, 500/502/503/504
    QUOTA_EXCEEDED  429, RESOURCE_EXHAUSTED, rate limit, quota
    PERMANENT       entity/project/key not found or invalid, 401/403/404
    UNKNOWN         anything else (not retried)

classify_failure() is pure. ErrorClassifier wraps it and fires the
credential-refresh notification whenever the result is PERMANENT. Neither
ever raises, so both are safe inside except/retry blocks.
"""

import re
from collections.abc import Callable

from adstudio.models import FailureClass, RawFailure
from adstudio.utils.logging import get_logger

log = get_logger(__name__)

QUOTA_STATUS_CODES = frozenset({429})
PERMANENT_STATUS_CODES = frozenset({401, 403, 404})
TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})

QUOTA_PATTERN = re.compile(
    r"resource[_ ]exhausted|rate[ -]?limit|quota|too many requests|\b429\b"
)
PERMANENT_PATTERN = re.compile(
    r"entity was not found|entity not found|not_found|api key not valid|"
    r"invalid api key|api_key_invalid|permission[_ ]denied|unauthenticated|"
    r"project .*(?:not found|does not exist)"
)
TRANSIENT_PATTERN = re.compile(
    r"overloaded|unavailable|deadline|timed? ?out|internal error|"
    r"temporarily|try again|connection (?:reset|refused|error)|\b50[0234]\b"
)


def classify_failure(failure: RawFailure) -> FailureClass:
    """Classify a raw remote failure.

    Status codes win over message text; quota is checked before the other
    classes because a 429 body often also says "unavailable".

    Args:
        failure: RawFailure from a start or poll call.

    Returns:
        The FailureClass. UNKNOWN when nothing matches or input is malformed.

    Example:
        >>> classify_failure(RawFailure("Requested entity was not found."))
        <FailureClass.PERMANENT: 'permanent'>
    """
    try:
        code = failure.status_code
        if code in QUOTA_STATUS_CODES:
            return FailureClass.QUOTA_EXCEEDED
        if code in PERMANENT_STATUS_CODES:
            return FailureClass.PERMANENT
        if code in TRANSIENT_STATUS_CODES:
            return FailureClass.TRANSIENT

        text = f"{failure.status or ''} {failure.message or ''}".lower()
        if QUOTA_PATTERN.search(text):
            return FailureClass.QUOTA_EXCEEDED
        if PERMANENT_PATTERN.search(text):
            return FailureClass.PERMANENT
        if TRANSIENT_PATTERN.search(text):
            return FailureClass.TRANSIENT
    except Exception:  # noqa: BLE001 - classification must be total
        log.warning("failure_classification_error", failure=repr(failure))
    return FailureClass.UNKNOWN


class ErrorClassifier:
    """Classifier bound to a credential-refresh notification.

    The notification is one-way: it is called synchronously and its result
    is ignored. Coroutine notifiers are wrapped by CredentialRefreshNotifier
    so they never block classification.

    Example:
        >>> classifier = ErrorClassifier(on_permanent=notifier)
        >>> classifier(RawFailure("Requested entity was not found."))
        <FailureClass.PERMANENT: 'permanent'>  # notifier fired once
    """

    def __init__(self, on_permanent: Callable[[RawFailure], None] | None = None):
        self._on_permanent = on_permanent

    def __call__(self, failure: RawFailure) -> FailureClass:
        return self.classify(failure)

    def classify(self, failure: RawFailure) -> FailureClass:
        failure_class = classify_failure(failure)
        if failure_class is FailureClass.PERMANENT and self._on_permanent is not None:
            try:
                self._on_permanent(failure)
            except Exception:
                log.error("credential_refresh_signal_failed", exc_info=True)
        return failure_class
