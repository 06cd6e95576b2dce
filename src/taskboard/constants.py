STATE_DIR_NAME = ".taskboard"
CONFIG_FILE = "config.yaml"
BOARDS_DIR = "boards"
ARTIFACTS_DIR = "artifacts"
EVENTS_FILE = "board_events.jsonl"

BOARD_FILE_SUFFIX = ".yaml"
BOARD_LOCK_SUFFIX = ".lock"

# A client-observed timestamp may trail the server's by this much before the
# move is treated as a concurrent edit.
CONFLICT_TOLERANCE_MS = 2000
CONFLICT_TOLERANCE_ENV = "TASKBOARD_CONFLICT_TOLERANCE_MS"

DEFAULT_DRAG_DISTANCE_PX = 8
DEFAULT_ELEVATED_ROLES = ("admin",)
DEFAULT_HIGH_PRIORITY = "high"
DEFAULT_TERMINAL_COLUMN = "done"

# Idempotency results kept per board; the oldest are dropped first.
MAX_IDEMPOTENCY_RECORDS = 500
MAX_AUDIT_ENTRIES = 2000
