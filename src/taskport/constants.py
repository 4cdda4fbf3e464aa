STATE_DIR_NAME = ".taskport"
CONFIG_FILE = "config.yaml"
JOBS_DIR = "jobs"
TREES_DIR = "trees"
INDEX_FILE = "index.json"
INDEX_LOCK_FILE = "index.lock"
EVENTS_DIR = "events"
GLOBAL_EVENTS_FILE = "all.jsonl"
SUBSCRIBERS_DIR = "subscribers"
ARTIFACTS_DIR = "artifacts"
RUNTIME_DIR = "runtime"
DAEMON_STATE_FILE = "daemon.json"
DAEMON_START_LOCK_FILE = "daemon-start.lock"
DAEMON_LOG_FILE = "daemon.log"

INDEX_VERSION = 3
WINDOWS_LOCK_BYTES = 4096

TASK_ID_PREFIX = "task-"
WORKTREE_BRANCH_PREFIX = "taskport-task-"
REPO_LOCK_KEY = "__repo__"

DEFAULT_TIMEOUT_MINUTES = 30
DEFAULT_DAEMON_IDLE_STOP_MINUTES = 10
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_RETENTION_COMPLETED_DAYS = 7
DEFAULT_RETENTION_FAILED_DAYS = 30
DEFAULT_ATTACH_IDLE_TIMEOUT_MINUTES = 30
DEFAULT_ATTACH_RECONNECT_GRACE_SECONDS = 30
DEFAULT_MOCK_SLEEP_MS = 750
EVENT_READ_LIMIT = 500

AMBIGUOUS_REF_HINT = "use a longer prefix or numeric id"
BUILTIN_WORKER_TYPES = ("mock", "opencode")
