import os
import shlex
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("CLASSJUDGE_DATA_DIR", str(BASE_DIR / "data")))
SCRATCH_DIR = Path(os.getenv("CLASSJUDGE_SCRATCH_DIR", str(DATA_DIR / "scratch")))

# Create directories
DATA_DIR.mkdir(parents=True, exist_ok=True)
SCRATCH_DIR.mkdir(parents=True, exist_ok=True)

# Execution settings
MAX_CONCURRENT_EXECUTIONS = int(os.getenv("MAX_CONCURRENT_EXECUTIONS", "4"))
MAX_QUEUED_EXECUTIONS = int(os.getenv("MAX_QUEUED_EXECUTIONS", "32"))
COMPILE_TIMEOUT_SECONDS = int(os.getenv("COMPILE_TIMEOUT_SECONDS", "30"))
PROBE_TIMEOUT_SECONDS = 10
MAX_CODE_LENGTH = 10000
MAX_OUTPUT_SIZE = int(os.getenv("MAX_OUTPUT_SIZE", str(1024 * 1024)))  # bytes

# Host ceilings applied to the child process
MEMORY_LIMIT_MB = int(os.getenv("MEMORY_LIMIT_MB", "256"))
MAX_PROCESSES = int(os.getenv("MAX_PROCESSES", "64"))
MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_OPEN_FILES = 256

# Optional jail command prepended to every run, e.g. "bwrap --unshare-all ..."
SANDBOX_PREFIX = shlex.split(os.getenv("SANDBOX_PREFIX", ""))

# Environment variables passed through to submitted programs
ALLOWED_ENV_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "GOPATH", "GOCACHE", "JAVA_HOME")

# Judge settings
DEFAULT_POINT_WEIGHT = 1

# Auto-submission
AUTO_SUBMIT_INTERVAL_SECONDS = int(os.getenv("AUTO_SUBMIT_INTERVAL_SECONDS", "60"))
AUTO_SUBMIT_ENABLED = os.getenv("AUTO_SUBMIT_ENABLED", "true").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR}/classjudge.db")
