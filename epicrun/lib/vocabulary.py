"""
Completion-signal vocabulary.

Loads data/vocabulary.yaml, which holds per-phase signal tokens, fuzzy
classification patterns and findings-block markers. The tables are data so
they can be tuned without touching the extractor.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

VOCABULARY_FILE = Path(__file__).resolve().parent.parent / "data" / "vocabulary.yaml"
SUPPORTED_VERSION = 1

REMEDIATION = "remediation"
TRACEABILITY_REMEDIATION = "traceability_remediation"


class VocabularyError(Exception):
    """Vocabulary file is missing, malformed, or an unsupported version."""
    pass


@dataclass(frozen=True)
class PhaseVocabulary:
    """Signal vocabulary for one phase (or one remediation kind)."""
    name: str
    token_prefix: str
    token_statuses: dict[str, str]
    token_pattern: re.Pattern
    fuzzy_complete: re.Pattern
    fuzzy_blocked: re.Pattern
    on_block: str = "failed"
    findings: str | None = None


def _compile_entry(name: str, entry: dict) -> PhaseVocabulary:
    try:
        tokens = entry["tokens"]
        prefix = tokens["prefix"]
        statuses = {str(k).upper(): str(v) for k, v in tokens["statuses"].items()}
        subject = entry["subject"]
        complete = entry["complete"]
        blocked = entry["blocked"]
    except (KeyError, TypeError) as e:
        raise VocabularyError(f"Vocabulary entry '{name}' is missing {e}") from None

    # Longest status first so PASSED is tried before PASS
    alternation = "|".join(re.escape(s) for s in sorted(statuses, key=len, reverse=True))
    token_pattern = re.compile(
        rf"^[\s*#>`_]*{re.escape(prefix)}\s*:?\s+(?P<status>{alternation})\b(?P<rest>.*)$",
        re.MULTILINE,
    )

    return PhaseVocabulary(
        name=name,
        token_prefix=prefix,
        token_statuses=statuses,
        token_pattern=token_pattern,
        fuzzy_complete=re.compile(rf"{subject}[^\n]*{complete}", re.IGNORECASE),
        fuzzy_blocked=re.compile(rf"{subject}[^\n]*{blocked}", re.IGNORECASE),
        on_block=entry.get("on_block", "failed"),
        findings=entry.get("findings"),
    )


@lru_cache(maxsize=4)
def load_vocabulary(path: Path = VOCABULARY_FILE) -> dict[str, PhaseVocabulary]:
    """Load and compile the vocabulary file (cached).

    Returns:
        Mapping of phase value (or remediation kind) to PhaseVocabulary

    Raises:
        VocabularyError: If the file is missing, malformed or the wrong version
    """
    if not path.exists():
        raise VocabularyError(f"Vocabulary file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise VocabularyError(f"Failed to parse {path}: {e}") from None

    if not isinstance(data, dict):
        raise VocabularyError(f"Vocabulary file {path} is not a mapping")

    version = data.get("version")
    if version != SUPPORTED_VERSION:
        raise VocabularyError(
            f"Unsupported vocabulary version {version!r} in {path} "
            f"(expected {SUPPORTED_VERSION})"
        )

    vocab = {}
    for name, entry in (data.get("phases") or {}).items():
        vocab[name] = _compile_entry(name, entry)
    for name in (REMEDIATION, TRACEABILITY_REMEDIATION):
        if name in data:
            vocab[name] = _compile_entry(name, data[name])

    logger.debug(f"Loaded vocabulary v{version} with {len(vocab)} entries from {path}")
    return vocab


def get_vocabulary(name: str) -> PhaseVocabulary:
    """Vocabulary for a phase value or remediation kind.

    Raises:
        VocabularyError: If no entry exists for name
    """
    vocab = load_vocabulary()
    if name not in vocab:
        raise VocabularyError(f"No vocabulary entry for '{name}'")
    return vocab[name]
