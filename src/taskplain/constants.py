STATE_DIR_NAME = ".taskplain"
CONFIG_FILE = "config.yaml"
TASKS_DIR_NAME = "tasks"

STATE_DIRECTORIES = {
    "idea": "00-idea",
    "ready": "10-ready",
    "in-progress": "20-in-progress",
    "done": "30-done",
    "canceled": "40-canceled",
}

TASK_FILE_SUFFIX = ".md"

MAX_HIERARCHY_DEPTH = 3

DEFAULT_NEXT_COUNT = 1
DEFAULT_CHILD_SUGGESTION_LIMIT = 3

# Bulk normalization lock
LOCK_DIR_NAME = "taskplain-locks"
FIX_LOCK_NAME = "fix.lock"
DEFAULT_LOCK_RETRIES = 5
DEFAULT_LOCK_FACTOR = 1.5
DEFAULT_LOCK_MIN_TIMEOUT = 0.1
DEFAULT_LOCK_MAX_TIMEOUT = 0.4
DEFAULT_LOCK_STALE_SECONDS = 30.0

STALE_TIMESTAMP_TOLERANCE_SECONDS = 5.0

# Completion time after which done tasks must carry a commit message
COMMIT_MESSAGE_CUTOFF = "2025-11-01T00:00:00Z"

ACCEPTANCE_PLACEHOLDER = "Describe the expected outcome"
