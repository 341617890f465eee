"""Flow parameter models for the epic and chain flows."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator

from epicrun.lib.config import RunOptions
from epicrun.lib.constants import EPIC_ID_PATTERN
from epicrun.lib.types import PhaseType


def _check_epic_id(value: str) -> str:
    value = str(value).strip()
    if not EPIC_ID_PATTERN.match(value):
        raise ValueError(f"Epic id must be numeric, got '{value}'")
    return value


class EpicRequest(BaseModel):
    """Input for one epic run."""
    project_root: str
    epic_id: str
    start_from: Optional[str] = None
    skip_done: bool = False
    dry_run: bool = False
    no_commit: bool = False
    skip_phases: list[str] = []
    run_regression: bool = True
    run_static_analysis: bool = True
    verbose: bool = False
    handoff: str = ""

    @field_validator("epic_id")
    @classmethod
    def epic_id_numeric(cls, v: str) -> str:
        return _check_epic_id(v)

    @field_validator("skip_phases")
    @classmethod
    def known_phases(cls, v: list[str]) -> list[str]:
        known = {p.value for p in PhaseType}
        unknown = [p for p in v if p not in known]
        if unknown:
            raise ValueError(f"Unknown phase(s): {', '.join(unknown)}")
        return v

    @property
    def root(self) -> Path:
        return Path(self.project_root)

    def to_options(self) -> RunOptions:
        return RunOptions(
            start_from=self.start_from,
            skip_done=self.skip_done,
            dry_run=self.dry_run,
            no_commit=self.no_commit,
            verbose=self.verbose,
            skip_phases=frozenset(PhaseType(p) for p in self.skip_phases),
            run_regression=self.run_regression,
            run_static_analysis=self.run_static_analysis,
        )


class ChainRequest(BaseModel):
    """Input for a chain of epics."""
    project_root: str
    epic_ids: list[str]
    start_from: Optional[str] = None
    analyze_only: bool = False
    no_handoff: bool = False
    no_uat: bool = False
    uat_gate_mode: Optional[str] = None  # full, quick, skip; None uses config
    uat_blocking: Optional[bool] = None  # None uses config
    no_combined_uat: bool = False
    skip_done: bool = False
    dry_run: bool = False
    no_commit: bool = False
    skip_phases: list[str] = []
    run_regression: bool = True
    run_static_analysis: bool = True
    verbose: bool = False

    @field_validator("epic_ids")
    @classmethod
    def epic_ids_numeric(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one epic id is required")
        return [_check_epic_id(e) for e in v]

    @field_validator("uat_gate_mode")
    @classmethod
    def known_mode(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("full", "quick", "skip"):
            raise ValueError(f"Unknown UAT gate mode '{v}'")
        return v

    @property
    def root(self) -> Path:
        return Path(self.project_root)

    def epic_request(self, epic_id: str, handoff: str = "") -> EpicRequest:
        return EpicRequest(
            project_root=self.project_root,
            epic_id=epic_id,
            skip_done=self.skip_done,
            dry_run=self.dry_run,
            no_commit=self.no_commit,
            skip_phases=self.skip_phases,
            run_regression=self.run_regression,
            run_static_analysis=self.run_static_analysis,
            verbose=self.verbose,
            handoff=handoff,
        )
