"""
Configuration loaders for epicrun.

Loads the project configuration from <project_root>/.epicrun.env. Every key
is optional; defaults reproduce the stock phase policies.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import envparse
from .constants import (
    CHECKPOINT_MAX_AGE_DAYS,
    CONFIG_FILENAME,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT,
    DEFAULT_PROTECTED_BRANCHES,
    DEFAULT_STATE_DIR,
    MAX_PROMPT_BYTES,
    MAX_TEST_FAILURE_BYTES,
    PROMPT_RESERVE_BYTES,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    STATIC_ANALYSIS_MAX_FIX_ATTEMPTS,
)
from .types import PhaseType

logger = logging.getLogger(__name__)

VALID_UAT_GATE_MODES = ("full", "quick", "skip")


class ConfigurationError(Exception):
    """Required external input is missing or invalid. Fatal before any agent call."""
    pass


@dataclass
class PhasePolicy:
    """Fix-loop and blocking policy for one phase type."""
    phase: PhaseType
    max_fix_attempts: int
    medium_threshold: int
    hard_blocking: bool
    unclear_retries: int = 1


@dataclass
class GateThresholds:
    test_quality_pass: int = 70
    test_quality_concerns: int = 60
    trace_p0_required: float = 100.0
    trace_p1_pass: float = 90.0
    trace_p1_concerns: float = 80.0


# (max_fix_attempts, medium_threshold, hard_blocking)
DEFAULT_PHASE_POLICIES = {
    PhaseType.DEV: (0, 5, True),
    PhaseType.ARCH_COMPLIANCE: (2, 5, False),
    PhaseType.CODE_REVIEW: (3, 5, True),
    PhaseType.TEST_QUALITY: (2, 3, False),
    PhaseType.TRACEABILITY: (3, 5, False),
    PhaseType.ACCEPTANCE_DOC: (0, 5, False),
    PhaseType.ACCEPTANCE_GATE: (2, 0, False),
}


@dataclass
class RunConfig:
    """Project-level configuration from .epicrun.env"""
    project_root: Path
    stories_dir: Path
    epics_dir: Path
    sprint_artifacts_dir: Path
    sprint_status_file: Path
    uat_dir: Path
    handoff_dir: Path
    state_dir: Path
    agent_command: str
    agent_timeout: int
    retry_max_attempts: int
    retry_initial_delay: float
    retry_max_delay: float
    max_prompt_bytes: int
    prompt_reserve_bytes: int
    checkpoint_max_age_days: int
    test_command: str
    test_timeout: int
    typecheck_command: str
    lint_command: str
    build_command: str
    static_analysis_timeout: int
    static_analysis_max_fixes: int
    max_test_failure_bytes: int
    protected_branches: tuple[str, ...]
    uat_gate_mode: str
    uat_blocking: bool
    notifications: bool
    policies: dict[PhaseType, PhasePolicy] = field(default_factory=dict)
    gates: GateThresholds = field(default_factory=GateThresholds)

    @property
    def metrics_dir(self) -> Path:
        return self.sprint_artifacts_dir / "metrics"

    def policy(self, phase: PhaseType) -> PhasePolicy:
        return self.policies[phase]


@dataclass
class RunOptions:
    """Per-invocation switches from the command line."""
    start_from: str | None = None
    skip_done: bool = False
    dry_run: bool = False
    no_commit: bool = False
    verbose: bool = False
    skip_phases: frozenset = frozenset()
    run_regression: bool = True
    run_static_analysis: bool = True

    def skips(self, phase: PhaseType) -> bool:
        return phase in self.skip_phases


def _int(env: dict, key: str, default) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got '{raw}'") from None


def _float(env: dict, key: str, default) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got '{raw}'") from None


def _bool(env: dict, key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _load_policies(env: dict) -> dict[PhaseType, PhasePolicy]:
    unclear_retries = _int(env, "UNCLEAR_RETRIES", 1)
    policies = {}
    for phase, (max_fix, medium, blocking) in DEFAULT_PHASE_POLICIES.items():
        suffix = phase.value.upper()
        max_fix = _int(env, f"MAX_FIX_ATTEMPTS_{suffix}", max_fix)
        if max_fix < 0:
            raise ConfigurationError(f"MAX_FIX_ATTEMPTS_{suffix} cannot be negative")
        policies[phase] = PhasePolicy(
            phase=phase,
            max_fix_attempts=max_fix,
            medium_threshold=_int(env, f"MEDIUM_THRESHOLD_{suffix}", medium),
            hard_blocking=_bool(env, f"HARD_BLOCKING_{suffix}", blocking),
            unclear_retries=unclear_retries,
        )
    return policies


def load_run_config(project_root: Path, env: dict | None = None) -> RunConfig:
    """Load .epicrun.env from project_root and return RunConfig.

    Raises:
        ConfigurationError: if the project root is missing or a value is invalid
    """
    project_root = Path(project_root).resolve()
    if not project_root.is_dir():
        raise ConfigurationError(f"Project root not found: {project_root}")

    if env is None:
        try:
            env = envparse.load_env_optional(project_root / CONFIG_FILENAME)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {CONFIG_FILENAME}: {e}") from None

    def path(key: str, default: str) -> Path:
        return project_root / env.get(key, default)

    sprint_artifacts = path("SPRINT_ARTIFACTS_DIR", "docs/sprint-artifacts")

    uat_gate_mode = env.get("UAT_GATE_MODE", "full").lower()
    if uat_gate_mode not in VALID_UAT_GATE_MODES:
        logger.warning(f"Unknown UAT_GATE_MODE '{uat_gate_mode}', using 'full'")
        uat_gate_mode = "full"

    retry_max_attempts = _int(env, "RETRY_MAX_ATTEMPTS", RETRY_MAX_ATTEMPTS)
    if retry_max_attempts < 1:
        raise ConfigurationError("RETRY_MAX_ATTEMPTS must be at least 1")

    static_analysis_max_fixes = _int(env, "MAX_FIX_ATTEMPTS_STATIC_ANALYSIS", STATIC_ANALYSIS_MAX_FIX_ATTEMPTS)
    if static_analysis_max_fixes < 0:
        raise ConfigurationError("MAX_FIX_ATTEMPTS_STATIC_ANALYSIS cannot be negative")

    protected = env.get("PROTECTED_BRANCHES")
    protected_branches = tuple(protected.split()) if protected is not None else DEFAULT_PROTECTED_BRANCHES

    return RunConfig(
        project_root=project_root,
        stories_dir=path("STORIES_DIR", "docs/stories"),
        epics_dir=path("EPICS_DIR", "docs/epics"),
        sprint_artifacts_dir=sprint_artifacts,
        sprint_status_file=(
            path("SPRINT_STATUS_FILE", "") if env.get("SPRINT_STATUS_FILE")
            else sprint_artifacts / "sprint-status.yaml"
        ),
        uat_dir=path("UAT_DIR", "docs/uat"),
        handoff_dir=path("HANDOFF_DIR", "docs/handoffs"),
        state_dir=path("STATE_DIR", DEFAULT_STATE_DIR),
        agent_command=env.get("AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
        agent_timeout=_int(env, "AGENT_TIMEOUT", DEFAULT_AGENT_TIMEOUT),
        retry_max_attempts=retry_max_attempts,
        retry_initial_delay=_float(env, "RETRY_INITIAL_DELAY", RETRY_INITIAL_DELAY),
        retry_max_delay=_float(env, "RETRY_MAX_DELAY", RETRY_MAX_DELAY),
        max_prompt_bytes=_int(env, "MAX_PROMPT_BYTES", MAX_PROMPT_BYTES),
        prompt_reserve_bytes=_int(env, "PROMPT_RESERVE_BYTES", PROMPT_RESERVE_BYTES),
        checkpoint_max_age_days=_int(env, "CHECKPOINT_MAX_AGE_DAYS", CHECKPOINT_MAX_AGE_DAYS),
        test_command=env.get("TEST_COMMAND", ""),
        test_timeout=_int(env, "TEST_TIMEOUT", 600),
        typecheck_command=env.get("TYPECHECK_COMMAND", ""),
        lint_command=env.get("LINT_COMMAND", ""),
        build_command=env.get("BUILD_COMMAND", ""),
        static_analysis_timeout=_int(env, "STATIC_ANALYSIS_TIMEOUT", 600),
        static_analysis_max_fixes=static_analysis_max_fixes,
        max_test_failure_bytes=_int(env, "MAX_TEST_FAILURE_BYTES", MAX_TEST_FAILURE_BYTES),
        protected_branches=protected_branches,
        uat_gate_mode=uat_gate_mode,
        uat_blocking=_bool(env, "UAT_BLOCKING", False),
        notifications=_bool(env, "NOTIFICATIONS", True),
        policies=_load_policies(env),
        gates=GateThresholds(
            test_quality_pass=_int(env, "TEST_QUALITY_PASS_SCORE", 70),
            test_quality_concerns=_int(env, "TEST_QUALITY_CONCERNS_SCORE", 60),
            trace_p1_pass=_float(env, "TRACE_P1_PASS", 90.0),
            trace_p1_concerns=_float(env, "TRACE_P1_CONCERNS", 80.0),
        ),
    )
