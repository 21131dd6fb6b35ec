
DEFAULT_STEP_TIMEOUT = 6 * 60 * 60
DEFAULT_STALE_AFTER = 5 * 60
DEFAULT_JANITOR_INTERVAL = 6 * 60 * 60
DEFAULT_JANITOR_CEILING = 2 * DEFAULT_STEP_TIMEOUT
DEFAULT_CONDITION_POLL_INTERVAL = 5.0
DEFAULT_PROGRESS_THROTTLE = 2.0
DEFAULT_STATUS_THROTTLE = 1.0
DEFAULT_STATUS_LOG_INTERVAL = 5 * 60
DEFAULT_MAX_LOG_ENTRIES = 1000

SKIPPED_RESULT_REASON = "Skipped in workflow configuration"
STALE_EXECUTION_ERROR = "Stale execution: process restarted before the step finished"
CANCELLED_ON_PAUSE_ERROR = "Cycle paused - will retry on resume"
MANUAL_PAUSE_REASON = "Manually paused by user"
QUOTA_PAUSE_REASON = "Provider daily API quota reached. Will resume at {resume_at} UTC."
MAX_CYCLES_REASON = "Max cycles reached"

# Messages containing one of these are persisted to the record log
LOG_MILESTONE_MARKERS = ("started", "completed", "Summary", "Final")
