"""
Queue constants.
Centralized location for all constant values used across the package.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - INACTIVE -> ACTIVE (claimed by a worker)
    - DELAYED -> INACTIVE (promoted once due)
    - ACTIVE -> COMPLETE (handler succeeded)
    - ACTIVE -> INACTIVE | DELAYED (failed attempt, retry remaining)
    - ACTIVE -> FAILED (attempts exhausted)
    - INACTIVE | ACTIVE | DELAYED -> DELAYED (explicit delay)
    """

    INACTIVE = "inactive"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES: frozenset[JobState] = frozenset({JobState.COMPLETE, JobState.FAILED})
NON_TERMINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.INACTIVE, JobState.ACTIVE, JobState.DELAYED}
)


class JobEventName(StrEnum):
    """Events published for job mutations."""

    ENQUEUE = "enqueue"
    UPDATE = "update"
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    FAILED_ATTEMPT = "failed attempt"
    FAILED = "failed"
    DELAY = "delay"
    PROMOTION = "promotion"
    REMOVE = "remove"


# Events after which no further updates are relayed to a local job handle
TERMINAL_EVENTS: frozenset[str] = frozenset(
    {JobEventName.COMPLETE, JobEventName.FAILED, JobEventName.REMOVE}
)

# Prefix for queue-level activity events ("job complete", "job progress", ...)
QUEUE_EVENT_PREFIX = "job "


# Named priorities (lower value = processed first)
PRIORITIES: dict[str, int] = {
    "low": 10,
    "normal": 0,
    "medium": -5,
    "high": -10,
    "critical": -15,
}

# Inactive score = priority * PRIORITY_SCORE_FACTOR + id, so ids must stay below it
PRIORITY_SCORE_FACTOR = 2**32

# Default values
DEFAULT_PRIORITY = PRIORITIES["normal"]
DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_PROMOTION_INTERVAL_MS = 5000
DEFAULT_PROMOTION_BATCH_SIZE = 20

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOB_CLAIMS = "job_claims_total"
METRIC_JOBS_PROMOTED = "jobs_promoted_total"
METRIC_EVENTS_DROPPED = "events_dropped_total"

# Trace span names
SPAN_PROCESS_JOB = "process_job"
SPAN_PROMOTE = "promote_delayed_jobs"
