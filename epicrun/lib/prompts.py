"""
Prompt loader and assembler for epicrun.

Loads prompt templates from epicrun/prompts/ and interpolates variables.
Templates use Python str.format() syntax: {variable_name}
Use {{ and }} for literal braces in LLM output (e.g., JSON examples).

HTML comments (<!-- ... -->) are stripped before rendering - use them for
documentation that shouldn't be sent to the LLM.

Large context (story files, architecture docs, decision logs) is combined
through assemble_prompt(), which keeps the result under the prompt ceiling by
truncating or dropping fragments by priority.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from functools import lru_cache
from pathlib import Path

from .constants import MAX_PROMPT_BYTES, PROMPT_RESERVE_BYTES

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError", "load_prompt", "render_prompt", "build_section", "clear_cache", "PROMPTS_DIR",
    "Priority", "PromptFragment", "AssembledPrompt", "assemble_prompt", "truncate_fragment",
]

_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


class PromptError(Exception):
    """Raised when prompt loading or rendering fails."""
    pass


@lru_cache(maxsize=32)
def load_prompt(name: str) -> str:
    """
    Load a prompt template by name (cached).

    Raises:
        PromptError: If prompt file doesn't exist
    """
    prompt_path = PROMPTS_DIR / f"{name}.md"

    if not prompt_path.exists():
        raise PromptError(
            f"Prompt template '{name}' not found. "
            f"Expected file: {prompt_path}"
        )

    logger.debug(f"Loading prompt template: {name}")
    content = prompt_path.read_text()
    content = _HTML_COMMENT_PATTERN.sub('', content)
    return content.lstrip()


def render_prompt(name: str, **kwargs) -> str:
    """
    Load and render a prompt template with variables.

    Raises:
        PromptError: If template not found or required variable missing

    Example:
        render_prompt('fix', phase='code_review', issues='- [HIGH] ...')
    """
    template = load_prompt(name)

    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. "
            f"Provided: {list(kwargs.keys())}"
        ) from e


def build_section(
    content: str | None,
    header: str,
    empty_msg: str | None = None
) -> str:
    """
    Build a markdown section if content exists.

    Returns:
        Formatted section string. Empty string if content is None AND empty_msg is None.
    """
    if content:
        return f"{header}\n\n{content}\n"
    elif empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n"
    else:
        return ""


def clear_cache():
    """Clear the prompt cache (useful for testing or hot-reload)."""
    load_prompt.cache_clear()


class Priority(IntEnum):
    """Fragment priority. Lower value is kept first."""
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


@dataclass(frozen=True)
class PromptFragment:
    """One named piece of prompt content.

    keep="head" truncates from the end, keep="tail" keeps the most recent
    content (decision logs, run history).
    """
    name: str
    content: str
    priority: Priority = Priority.MEDIUM
    keep: str = "head"
    max_bytes: int | None = None


@dataclass
class AssembledPrompt:
    text: str
    included: list[str] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.text.encode("utf-8"))


def _nbytes(s: str) -> int:
    return len(s.encode("utf-8"))


def truncate_fragment(content: str, limit: int, keep: str = "head") -> str:
    """Truncate content to at most limit bytes including the truncation notice."""
    total = _nbytes(content)
    if total <= limit:
        return content

    # Notice length depends on the shown size; size it for the worst case
    probe = f"\n... [CONTENT TRUNCATED - {total} bytes total, showing {total} bytes] ...\n"
    shown = max(0, limit - _nbytes(probe))
    raw = content.encode("utf-8")
    if keep == "tail":
        kept = raw[len(raw) - shown:].decode("utf-8", errors="ignore")
    else:
        kept = raw[:shown].decode("utf-8", errors="ignore")
    notice = f"\n... [CONTENT TRUNCATED - {total} bytes total, showing {_nbytes(kept)} bytes] ...\n"

    if keep == "tail":
        return notice + kept
    return kept + notice


def assemble_prompt(
    fragments: list[PromptFragment],
    ceiling: int = MAX_PROMPT_BYTES,
    reserve: int = PROMPT_RESERVE_BYTES,
    separator: str = "\n\n",
) -> AssembledPrompt:
    """
    Combine fragments into one prompt that fits within ceiling - reserve bytes.

    Fragments are budgeted in priority order (stable within a priority).
    CRITICAL and HIGH fragments that do not fit are truncated with a notice;
    MEDIUM and LOW fragments that do not fit are dropped. The output keeps the
    caller's fragment order.
    """
    budget = max(0, ceiling - reserve)
    sep_bytes = _nbytes(separator)
    chosen: dict[int, str] = {}
    result = AssembledPrompt(text="")

    order = sorted(range(len(fragments)), key=lambda i: fragments[i].priority)
    remaining = budget
    for idx in order:
        frag = fragments[idx]
        if not frag.content:
            continue

        content = frag.content
        if frag.max_bytes is not None and _nbytes(content) > frag.max_bytes:
            content = truncate_fragment(content, frag.max_bytes, frag.keep)
            result.truncated.append(frag.name)
            result.warnings.append(
                f"{frag.name}: capped at {frag.max_bytes} bytes ({_nbytes(frag.content)} total)"
            )

        cost = _nbytes(content) + (sep_bytes if chosen else 0)
        if cost <= remaining:
            chosen[idx] = content
            remaining -= cost
            continue

        if frag.priority <= Priority.HIGH:
            room = remaining - (sep_bytes if chosen else 0)
            truncated = truncate_fragment(content, room, frag.keep) if room > 0 else ""
            # Too little room left even for the truncation notice
            if truncated and _nbytes(truncated) <= room:
                remaining -= _nbytes(truncated) + (sep_bytes if chosen else 0)
                chosen[idx] = truncated
                if frag.name not in result.truncated:
                    result.truncated.append(frag.name)
                result.warnings.append(
                    f"{frag.name}: truncated to fit prompt budget ({_nbytes(frag.content)} bytes total)"
                )
                continue

        result.dropped.append(frag.name)
        result.warnings.append(
            f"{frag.name}: dropped, {_nbytes(content)} bytes exceeds remaining budget of {remaining}"
        )

    parts = [chosen[i] for i in sorted(chosen)]
    result.included = [fragments[i].name for i in sorted(chosen)]
    result.text = separator.join(parts)

    for warning in result.warnings:
        logger.warning(f"[PROMPT] {warning}")

    return result
