"""
Signal extraction from agent output.

Turns the free text an agent prints into a PhaseResult. Strategies are tried
in order and the first one that yields a recognised status wins:

    1. last ```json fenced block
    2. last ```result fenced block
    3. last inline {"status": ...} object (no nested braces)
    4. last completion-signal line, e.g. "REVIEW PASSED WITH FIXES"
    5. fuzzy classification against the phase vocabulary

Structured candidates (1-3) must parse as JSON, match the agent_result schema
and carry a status from STATUS_MAP; otherwise they are discarded and the next
strategy runs. Extraction never raises; the worst case is status=unclear.

Issue lists, traceability gaps, coverage, scores and passing-test counts are
read independently of the strategy that produced the status.
"""

import json
import logging
import re

from .test_parser import count_passing_tests
from .types import Issue, PhaseResult, PhaseStatus, PhaseType, Severity
from .validate import is_valid
from .vocabulary import REMEDIATION, TRACEABILITY_REMEDIATION, get_vocabulary

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "COMPLETE": PhaseStatus.COMPLETE,
    "PASSED": PhaseStatus.COMPLETE,
    "PASS": PhaseStatus.COMPLETE,
    "COMPLIANT": PhaseStatus.COMPLETE,
    "APPROVED": PhaseStatus.COMPLETE,
    "SUCCESS": PhaseStatus.COMPLETE,
    "DONE": PhaseStatus.COMPLETE,
    "OK": PhaseStatus.COMPLETE,
    "CONCERNS": PhaseStatus.CONCERNS,
    "WITH_ISSUES": PhaseStatus.CONCERNS,
    "BLOCKED": PhaseStatus.BLOCKED,
    "HALT": PhaseStatus.BLOCKED,
    "FAILED": PhaseStatus.FAILED,
    "FAIL": PhaseStatus.FAILED,
    "VIOLATIONS": PhaseStatus.FAILED,
    "ERROR": PhaseStatus.FAILED,
    "INCOMPLETE": PhaseStatus.FAILED,
    "REJECTED": PhaseStatus.FAILED,
}

# Default issue category per phase for findings-block lines without one
_DEFAULT_CATEGORY = {
    PhaseType.DEV: "implementation",
    PhaseType.ARCH_COMPLIANCE: "architecture",
    PhaseType.CODE_REVIEW: "code_review",
    PhaseType.TEST_QUALITY: "test_quality",
    PhaseType.TRACEABILITY: "coverage_gap",
    PhaseType.ACCEPTANCE_DOC: "acceptance",
    PhaseType.ACCEPTANCE_GATE: "scenario_failure",
}

_FENCE_PATTERN = r'```{lang}[ \t]*\r?\n(.*?)```'
_JSON_FENCE = re.compile(_FENCE_PATTERN.format(lang="json"), re.DOTALL | re.IGNORECASE)
_RESULT_FENCE = re.compile(_FENCE_PATTERN.format(lang="result"), re.DOTALL | re.IGNORECASE)
_INLINE_OBJECT = re.compile(r'\{[^{}]*"status"[^{}]*\}')

# - [HIGH] Missing null check (src/api.ts:42)
_FINDING_LINE = re.compile(
    r'^\s*[-*]\s*\[(?P<severity>[A-Za-z0-9]+)\]\s*(?P<desc>.+?)(?:\s+\((?P<loc>[^()]+)\))?\s*$'
)
# GAP: 3-1|AC-2|P0|No test for expired token|3.1-API-004|api
_GAP_LINE = re.compile(r'^\s*GAP:\s*(?P<fields>.+)$', re.MULTILINE)
_SCORE = re.compile(r'\bScore:\s*(\d{1,3})\s*(?:/\s*100)?', re.IGNORECASE)
_COVERAGE = re.compile(r'\b(P[0-3])\s+coverage:?\s*(\d+(?:\.\d+)?)\s*%', re.IGNORECASE)
_BLOCK_MARKER = re.compile(r'^\s*(START|END)\b')

GAPS_MARKER = "TRACEABILITY GAPS"


class ExtractionError(Exception):
    """A structured block could not be parsed or validated."""
    pass


def map_status(raw) -> PhaseStatus | None:
    """Map a structured status value to a PhaseStatus, or None if unrecognised."""
    if not isinstance(raw, str):
        return None
    key = re.sub(r'[\s\-]+', '_', raw.strip().upper())
    if key in STATUS_MAP:
        return STATUS_MAP[key]
    if key.endswith("WITH_ISSUES"):
        return PhaseStatus.CONCERNS
    head = key.split("_", 1)[0]
    return STATUS_MAP.get(head)


def parse_structured_block(candidate: str) -> dict:
    """
    Parse and validate one structured result candidate.

    Raises:
        ExtractionError: If the text is not a JSON object, fails the
            agent_result schema, or carries an unrecognised status
    """
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Invalid JSON: {e}") from None

    if not is_valid(data, "agent_result"):
        raise ExtractionError("Block does not match agent_result schema")

    if map_status(data["status"]) is None:
        raise ExtractionError(f"Unrecognised status '{data['status']}'")

    return data


def _last_valid(candidates: list[str]) -> dict | None:
    for candidate in reversed(candidates):
        try:
            return parse_structured_block(candidate.strip())
        except ExtractionError as e:
            logger.debug(f"Discarding structured candidate: {e}")
    return None


def _find_structured(text: str) -> tuple[dict | None, str]:
    strategies = [
        ("json", _JSON_FENCE.findall(text)),
        ("result", _RESULT_FENCE.findall(text)),
        ("inline", _INLINE_OBJECT.findall(text)),
    ]
    for source, candidates in strategies:
        data = _last_valid(candidates)
        if data is not None:
            return data, source
    return None, "none"


def has_structured_signal(text: str) -> bool:
    """Whether the output carries a valid structured result block."""
    data, _ = _find_structured(text or "")
    return data is not None


def _find_token(text: str, vocab) -> tuple[PhaseStatus, str] | None:
    """Last completion-signal line for the vocabulary, as (status, detail)."""
    last = None
    for match in vocab.token_pattern.finditer(text):
        rest = match.group("rest")
        if _BLOCK_MARKER.match(rest):
            continue
        last = match
    if last is None:
        return None

    status = PhaseStatus(vocab.token_statuses[last.group("status")])
    detail = last.group("rest").strip().lstrip(":-").strip().rstrip("*`").strip()
    return status, detail


def _fuzzy(text: str, vocab) -> PhaseStatus:
    # Completion vocabulary is checked first
    if vocab.fuzzy_complete.search(text):
        return PhaseStatus.COMPLETE
    if vocab.fuzzy_blocked.search(text):
        return PhaseStatus(vocab.on_block)
    return PhaseStatus.UNCLEAR


def _block_lines(text: str, marker: str) -> list[str]:
    """Lines of the last "<marker> START ... <marker> END" block."""
    pattern = re.compile(
        rf'{re.escape(marker)}\s+START\s*\n(.*?)\n[^\n]*?{re.escape(marker)}\s+END',
        re.DOTALL,
    )
    blocks = pattern.findall(text)
    if not blocks:
        return []
    return blocks[-1].splitlines()


def parse_findings(text: str, marker: str, category: str) -> list[Issue]:
    """Parse "- [SEVERITY] description (location)" lines inside a findings block."""
    issues = []
    for line in _block_lines(text, marker):
        match = _FINDING_LINE.match(line)
        if not match:
            continue
        issues.append(Issue(
            category=category,
            severity=Severity.parse(match.group("severity")),
            description=match.group("desc").strip(),
            location=match.group("loc"),
        ))
    return issues


def parse_gaps(text: str) -> list[Issue]:
    """Parse GAP: story|AC|priority|description|test_id|level lines into coverage-gap issues."""
    lines = "\n".join(_block_lines(text, GAPS_MARKER))
    issues = []
    for match in _GAP_LINE.finditer(lines):
        fields = [f.strip() for f in match.group("fields").split("|")]
        if len(fields) < 4:
            continue
        fields += [""] * (6 - len(fields))
        story, ac, priority, desc, test_id, level = fields[:6]
        suggestion = f" [{level or 'unit'} test {test_id}]" if test_id else ""
        issues.append(Issue(
            category="coverage_gap",
            severity=Severity.parse(priority),
            description=f"{ac}: {desc}{suggestion}",
            location=story or None,
        ))
    return issues


def _issues_from_data(data: dict, category: str) -> list[Issue]:
    issues = []
    for raw in data.get("issues") or []:
        issues.append(Issue(
            category=raw.get("category") or category,
            severity=Severity.parse(raw.get("severity")),
            description=raw["description"],
            location=raw.get("location"),
            fixable=raw.get("fixable", True),
        ))
    return issues


def _decisions(raw) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        return (raw,)
    decisions = []
    for item in raw:
        if isinstance(item, dict):
            why = item.get("why")
            decisions.append(f"{item['what']}: {why}" if why else item["what"])
        else:
            decisions.append(str(item))
    return tuple(decisions)


def _coverage(text: str, data: dict | None) -> tuple[tuple[str, float], ...]:
    if data and isinstance(data.get("coverage"), dict):
        return tuple((str(k).upper(), float(v)) for k, v in data["coverage"].items())
    found = {}
    for priority, pct in _COVERAGE.findall(text):
        found[priority.upper()] = float(pct)
    return tuple(sorted(found.items()))


def compute_quality_score(issues) -> int:
    """Test-quality score when the agent did not report one."""
    weights = {Severity.CRITICAL: 10, Severity.HIGH: 5, Severity.MEDIUM: 2, Severity.LOW: 1}
    return max(0, 100 - sum(weights[i.severity] for i in issues))


def extract_phase_result(text: str, phase: PhaseType, *, remediation: bool = False) -> PhaseResult:
    """
    Extract a PhaseResult from agent output.

    Args:
        text: Raw agent output
        phase: Phase the output belongs to
        remediation: Output came from a fix invocation (FIX COMPLETE / TEST
            GENERATION COMPLETE vocabulary instead of the phase vocabulary)

    Returns:
        PhaseResult. Never raises on malformed input.
    """
    text = text or ""
    if remediation:
        vocab_name = TRACEABILITY_REMEDIATION if phase == PhaseType.TRACEABILITY else REMEDIATION
    else:
        vocab_name = phase.value
    vocab = get_vocabulary(vocab_name)
    category = _DEFAULT_CATEGORY[phase]

    data, source = _find_structured(text)
    detail = ""

    if data is not None:
        status = map_status(data["status"])
    else:
        token = _find_token(text, vocab)
        if token is not None:
            status, detail = token
            source = "token"
        elif text.strip():
            status = _fuzzy(text, vocab)
            source = "fuzzy" if status != PhaseStatus.UNCLEAR else "none"
        else:
            status = PhaseStatus.UNCLEAR

    # Issues: structured list first, then the phase findings block
    if data is not None and data.get("issues"):
        issues = _issues_from_data(data, category)
    else:
        marker = get_vocabulary(phase.value).findings
        issues = parse_findings(text, marker, category) if marker and marker != GAPS_MARKER else []
    if phase == PhaseType.TRACEABILITY and not (data and data.get("issues")):
        issues.extend(parse_gaps(text))

    score = None
    if data is not None and data.get("score") is not None:
        score = int(data["score"])
    else:
        scores = _SCORE.findall(text)
        if scores:
            score = min(100, int(scores[-1]))
    if score is None and phase == PhaseType.TEST_QUALITY and status != PhaseStatus.UNCLEAR:
        score = compute_quality_score(issues)

    if data is not None:
        summary = data.get("summary") or ""
        detail = detail or _scenario_detail(data)
    else:
        summary = detail

    result = PhaseResult(
        phase=phase,
        status=status,
        score=score,
        issues=tuple(issues),
        summary=summary,
        files_changed=tuple((data or {}).get("files_changed") or ()),
        tests_added=(data or {}).get("tests_added"),
        decisions=_decisions((data or {}).get("decisions")),
        tests_passed=count_passing_tests(text),
        coverage=_coverage(text, data),
        detail=detail,
        source=source,
    )

    logger.debug(
        f"[SIGNAL] {phase.value}: status={status.value} source={source} "
        f"issues={len(issues)} score={score}"
    )
    return result


def _scenario_detail(data: dict) -> str:
    scenarios = data.get("scenarios")
    if not isinstance(scenarios, dict) or "total" not in scenarios:
        return ""
    return f"{scenarios.get('passed', 0)}/{scenarios['total']} scenarios passed"
