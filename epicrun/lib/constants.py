"""Shared constants for epicrun."""

import re

# Process exit codes (chain/epic level)
EXIT_SUCCESS = 0
EXIT_GATE_FAILURE = 1
EXIT_RETRY_EXHAUSTED = 2
EXIT_CONFIG_ERROR = 3
EXIT_LOCK_TIMEOUT = 4

# Epic IDs are numeric keys, optionally zero-padded ("3", "03", "12")
EPIC_ID_PATTERN = re.compile(r'^\d+$')

CONFIG_FILENAME = ".epicrun.env"
DEFAULT_STATE_DIR = ".epicrun"

DEFAULT_AGENT_COMMAND = "claude --dangerously-skip-permissions -p"
DEFAULT_AGENT_TIMEOUT = 600

RETRY_MAX_ATTEMPTS = 3
RETRY_INITIAL_DELAY = 5
RETRY_MAX_DELAY = 60

MAX_PROMPT_BYTES = 150_000
PROMPT_RESERVE_BYTES = 5_000
DECISION_LOG_TAIL_BYTES = 20_000

CHECKPOINT_MAX_AGE_DAYS = 7

STATIC_ANALYSIS_MAX_FIX_ATTEMPTS = 3
MAX_TEST_FAILURE_BYTES = 50_000

# Files that must never be swept into an automated commit
SENSITIVE_FILE_PATTERNS = [
    r'(^|/)\.env(\..*)?$',
    r'(^|/)credentials\.json$',
    r'\.pem$',
    r'\.key$',
    r'(^|/)id_rsa',
    r'(^|/)id_ed25519',
    r'\.p12$',
    r'(^|/)secrets?\.(ya?ml|json)$',
    r'\.secrets$',
    r'\.credentials$',
    r'(^|/)\.npmrc$',
    r'(^|/)\.pypirc$',
]

DEFAULT_PROTECTED_BRANCHES = ("main", "master")
