DATA_DIR_ENV = "AGENT_BOARD_DATA_DIR"
DEFAULT_DATA_DIR = "data"

WORKSPACE_FILE = "workspace.json"
PROJECTS_DIR = "projects"
LOGS_DIR = "logs"
PROMPTS_DIR = "prompts"
SETTINGS_FILE = "settings.yaml"

WORKSPACE_LOCK_KEY = "workspace"

WORKTREE_DIR_NAME = ".agent-worktrees"
BRANCH_PREFIX = "agent"
SHORT_ID_LENGTH = 8

TASK_STATUS_TODO = "todo"
TASK_STATUS_IN_PROGRESS = "in-progress"
TASK_STATUS_VERIFY = "verify"
TASK_STATUS_DONE = "done"
TASK_STATUSES = (
    TASK_STATUS_TODO,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_VERIFY,
    TASK_STATUS_DONE,
)

DISPATCH_NONE = "none"
DISPATCH_QUEUED = "queued"
DISPATCH_STARTING = "starting"
DISPATCH_RUNNING = "running"
DISPATCH_ACTIVE_STATES = {DISPATCH_STARTING, DISPATCH_RUNNING}

EXECUTION_SEQUENTIAL = "sequential"
EXECUTION_PARALLEL = "parallel"

DEFAULT_DELETED_TASK_RETENTION_HOURS = 24
DEFAULT_UNDO_WINDOW_SECONDS = 60
DEFAULT_STDERR_TAIL_BYTES = 8192
DEFAULT_API_BASE_URL = "http://127.0.0.1:1337"

# Variables that make a spawned agent think it is nested inside another agent
# session, or that collide with this server's own port.
STRIPPED_ENV_VARS = ("CLAUDECODE", "PORT")
STRIPPED_ENV_PREFIXES = ("npm_",)

GIT_TIMEOUT_SECONDS = 30
# Long enough for a cancelled agent to be terminated and then killed.
CANCEL_JOIN_SECONDS = 15
LIVE_MAX_RETRIES = 12
