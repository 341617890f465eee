"""
Story and epic discovery.

Stories are markdown files found in the stories and sprint-artifacts
directories, either named after the epic (3-1-login.md, story-3.1-login.md,
story-3-1-login.md) or referencing it in their content ("Epic: 3"). Their
"Status:" line and the sprint-status.yaml development_status map are the
persistent record of completion.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from .config import RunConfig
from .types import GateVerdict, PhaseResult

logger = logging.getLogger(__name__)

_STATUS_LINE = re.compile(r'^Status:.*$', re.MULTILINE | re.IGNORECASE)
_DONE_LINE = re.compile(r'^Status:.*\bdone\b', re.MULTILINE | re.IGNORECASE)
_DEPENDS_LINE = re.compile(r'^\**Depends on:?\**\s*:?\s*(.+)$', re.MULTILINE | re.IGNORECASE)
_DEPENDENCIES_SECTION = re.compile(r'^##\s+Dependencies\s*$', re.MULTILINE)
_EPIC_REF = re.compile(r'\bEpic\s+(\d+)\b')


class StoryStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


@dataclass
class Story:
    id: str
    path: Path
    epic_id: str
    number: tuple[int, ...] = ()
    status: StoryStatus = StoryStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    history: list[PhaseResult] = field(default_factory=list)
    gates: dict[str, GateVerdict] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return story_key(self.id)

    def read(self) -> str:
        return self.path.read_text()


@dataclass
class Epic:
    id: str
    path: Path
    stories: list[Story] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        for line in self.path.read_text().splitlines():
            if line.startswith("# "):
                return line[2:].strip()
        return f"Epic {self.id}"


def _natural_key(path: Path) -> list:
    """Sort key that orders 3-2 before 3-10 (like sort -V)."""
    return [int(part) if part.isdigit() else part for part in re.split(r'(\d+)', path.name)]


def story_key(story_id: str) -> str:
    """Normalise a story id to the {epic}-{seq}-{name} sprint-status key."""
    match = re.match(r'^(?:story-)?(\d+)[.\-](\d+)-(.+)$', story_id)
    if match:
        return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
    return story_id


def _story_number(story_id: str) -> tuple[int, ...]:
    match = re.match(r'^(?:story-)?(\d+)[.\-](\d+)', story_id)
    if match:
        return int(match.group(1)), int(match.group(2))
    return ()


def _references_epic(path: Path, epic_id: str) -> bool:
    try:
        text = path.read_text()
    except OSError:
        return False
    pattern = rf'(Epic\s*:\s*{epic_id}(?!\d)|epic-{epic_id}(?!\d)|Epic\s+{epic_id}(?!\d))'
    return re.search(pattern, text) is not None


def _story_dirs(config: RunConfig) -> list[Path]:
    return [config.stories_dir, config.sprint_artifacts_dir]


def discover_stories(config: RunConfig, epic_id: str) -> list[Story]:
    """
    Find the stories of an epic, deduplicated and naturally sorted.

    Returns:
        Ordered list of Story (may be empty; the caller decides whether that
        is a configuration error)
    """
    seen: set[Path] = set()
    found: list[Path] = []

    name_globs = [f"{epic_id}-[0-9]*-*.md", f"story-{epic_id}.[0-9]*-*.md", f"story-{epic_id}-[0-9]*-*.md"]

    for search_dir in _story_dirs(config):
        if not search_dir.is_dir():
            continue
        candidates = []
        for pattern in name_globs:
            candidates.extend(search_dir.glob(pattern))
        candidates.extend(p for p in search_dir.glob("*.md") if _references_epic(p, epic_id))

        for path in candidates:
            resolved = path.resolve()
            if resolved in seen or path.name.startswith("epic-"):
                continue
            seen.add(resolved)
            found.append(path)

    stories = []
    for path in sorted(found, key=_natural_key):
        story_id = path.stem
        stories.append(Story(
            id=story_id,
            path=path,
            epic_id=epic_id,
            number=_story_number(story_id),
            status=StoryStatus.DONE if is_story_done(path) else StoryStatus.PENDING,
            depends_on=parse_depends_on(path.read_text()),
        ))

    logger.debug(f"Discovered {len(stories)} stories for epic {epic_id}")
    return stories


def parse_depends_on(text: str) -> list[str]:
    """Story ids or keys from a "Depends on: 3-1, 3-2" line."""
    match = _DEPENDS_LINE.search(text)
    if not match:
        return []
    raw = match.group(1).strip()
    if raw.lower() in ("none", "n/a", "-"):
        return []
    return [d.strip().strip("`") for d in re.split(r'[,\s]+', raw) if d.strip().strip("`")]


def resolve_dependency(dep: str, stories: list[Story]) -> Story | None:
    """Match a dependency reference to a story by id, key or id prefix."""
    for story in stories:
        if dep in (story.id, story.key):
            return story
    dep_number = _story_number(dep)
    for story in stories:
        if dep_number and story.number == dep_number:
            return story
        if story.id.startswith(dep + "-"):
            return story
    return None


def is_story_done(path: Path) -> bool:
    try:
        return _DONE_LINE.search(Path(path).read_text()) is not None
    except OSError:
        return False


def update_story_status(path: Path, new_status: str) -> bool:
    """Rewrite the story's "Status:" line. Returns False if it has none."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Story file not found for status update: {path}")
        return False

    text = path.read_text()
    if not _STATUS_LINE.search(text):
        logger.warning(f"No Status field found in story file: {path.stem}")
        return False

    path.write_text(_STATUS_LINE.sub(f"Status: {new_status}", text, count=1))
    logger.info(f"Updated story file status: {path.stem} -> {new_status}")
    return True


def update_sprint_status(sprint_file: Path, story_id: str, new_status: str) -> bool:
    """
    Set development_status[<key>] in sprint-status.yaml.

    The line is replaced in place so comments and ordering survive. Returns
    False if the file or key is missing.
    """
    sprint_file = Path(sprint_file)
    if not sprint_file.exists():
        logger.debug("No sprint-status.yaml found - skipping sprint status update")
        return False

    key = story_key(story_id)
    text = sprint_file.read_text()
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {sprint_file}: {e}")
        return False

    dev_status = data.get("development_status") or {}
    if key not in dev_status:
        logger.debug(f"Story key '{key}' not found in {sprint_file.name}")
        return False

    pattern = re.compile(rf'^(\s*["\']?{re.escape(key)}["\']?\s*:).*$', re.MULTILINE)
    new_text, count = pattern.subn(rf'\g<1> {new_status}', text, count=1)
    if not count:
        return False
    sprint_file.write_text(new_text)
    logger.info(f"Updated sprint status: {key} -> {new_status}")
    return True


def mark_story_done(story: Story, config: RunConfig) -> None:
    """Record completion in the story file and sprint-status.yaml."""
    update_story_status(story.path, "done")
    update_sprint_status(config.sprint_status_file, story.id, "done")
    story.status = StoryStatus.DONE


EPIC_FILE_PATTERNS = ["epic-{id}.md", "epic-{id}-*.md", "epic-0{id}-*.md", "{id}.md"]


def find_epic_file(epics_dir: Path, epic_id: str) -> Path | None:
    epics_dir = Path(epics_dir)
    if not epics_dir.is_dir():
        return None
    for pattern in EPIC_FILE_PATTERNS:
        matches = sorted(epics_dir.rglob(pattern.format(id=epic_id)))
        if matches:
            return matches[0]
    return None


def parse_epic_dependencies(text: str) -> list[str]:
    """Epic ids named as "Epic N" within the "## Dependencies" section."""
    match = _DEPENDENCIES_SECTION.search(text)
    if not match:
        return []
    section = text[match.end():]
    next_heading = re.search(r'^#{1,2}\s', section, re.MULTILINE)
    if next_heading:
        section = section[:next_heading.start()]
    deps = []
    for dep in _EPIC_REF.findall(section):
        if dep not in deps:
            deps.append(dep)
    return deps


def load_epic(config: RunConfig, epic_id: str) -> Epic | None:
    """Locate an epic file and its stories. Returns None if the file is missing."""
    path = find_epic_file(config.epics_dir, epic_id)
    if path is None:
        return None
    return Epic(
        id=epic_id,
        path=path,
        stories=discover_stories(config, epic_id),
        dependencies=parse_epic_dependencies(path.read_text()),
    )
