"""
Safe KEY=value file parser and writer.

Used for the project config (.epicrun.env) and the epic checkpoint file.
Parses without shell execution and rejects values that look like shell
injection.
"""

import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',          # AND chaining
    r'\|\|',        # OR chaining
    r'\|',          # pipe
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')


def parse_env(text: str, source: str = "<string>") -> dict[str, str]:
    """
    Parse KEY=value lines into a dict.

    Raises:
        ValueError: if syntax invalid or forbidden pattern found
    """
    result = {}

    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()

        if not line or line.startswith('#'):
            continue

        if '=' not in line:
            raise ValueError(f"{source} line {lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"{source} line {lineno}: Invalid key '{key}'")

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        for pattern in FORBIDDEN_PATTERNS:
            if re.search(pattern, value):
                raise ValueError(f"{source} line {lineno}: Forbidden pattern in value for {key}")

        result[key] = value

    return result


def load_env(filepath: Path | str) -> dict[str, str]:
    """
    Parse env file safely, return dict.

    Raises:
        FileNotFoundError: if file doesn't exist
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")
    return parse_env(path.read_text(), str(path))


def load_env_optional(filepath: Path | str) -> dict[str, str]:
    """Like load_env, but a missing file yields an empty dict."""
    path = Path(filepath)
    if not path.exists():
        return {}
    return load_env(path)


def dump_env(data: dict, header: str | None = None) -> str:
    """Render a dict as KEY=value lines. None values are omitted."""
    lines = []
    if header:
        lines.extend(f"# {h}" for h in header.splitlines())
    for key, value in data.items():
        if not KEY_PATTERN.match(key):
            raise ValueError(f"Invalid key '{key}'")
        if value is None:
            continue
        text = str(value)
        if any(c in text for c in (' ', '#', '"')):
            text = '"' + text.replace('"', "'") + '"'
        lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"
