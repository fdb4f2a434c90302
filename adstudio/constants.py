"""Project-wide constants and mappings.

Status labels shown by display collaborators, sub-task naming, and the
catalogue of synthetic progress notes appended while a render is running.
"""

# Job.status → label shown by the queue display
STATUS_LABELS: dict[str, str] = {
    "pending": "Waiting...",
    "initiating": "Preparing",
    "polling": "Generating",
    "quota_wait": "Waiting for quota",
    "completed": "Ready",
    "failed": "Failed",
}

# Sub-task names for single-scene jobs
VIDEO_SUBTASK = "video"
VOICE_SUBTASK = "voice"

# Result keys merged into Job.result
VIDEO_RESULT_KEY = "video_url"
VOICE_RESULT_KEY = "voice_url"

# Bounded ring buffer size for OperationHandle.progress_trace
PROGRESS_TRACE_LIMIT = 4

PROGRESS_START_NOTE = "Initiating cinematic synthesis..."
PROGRESS_DONE_NOTE = "Final frame consistency achieved. Playback ready."

# Cycled through while a remote operation reports "not done"
PROGRESS_NOTES: tuple[str, ...] = (
    "Adjusting focal depth...",
    "Simulating ray-tracing...",
    "Optimizing temporal resolution...",
    "Filtering semantic noise...",
    "Enhancing texture details...",
)

# Prebuilt speech-model voice used when the caller picks none
DEFAULT_VOICE = "Kore"

# Message surfaced when the credential in use points at a missing project/key
INVALID_CREDENTIAL_MESSAGE = (
    "Invalid API Key or Project. Please select a valid key from a paid GCP project."
)
