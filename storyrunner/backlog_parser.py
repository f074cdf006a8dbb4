"""Convert a stories markdown document into a Backlog.

Expected shape (lenient; missing fields fall back to defaults):

    # PRD: Task Manager

    ## Introduction
    A small task manager for the team.

    ## User Stories

    ### US-001: Create tasks
    **Description:** As a user I can create a task.
    **Priority:** 1
    **Dependencies:** none

    **Acceptance Criteria:**
    - [ ] Task has a title
    - [ ] Typecheck passes
"""

import re
from pathlib import Path

from storyrunner.errors import BacklogFormatError
from storyrunner.models import Backlog, UserStory

STORY_HEADER_PATTERN = r"^###\s+([A-Za-z][A-Za-z0-9]*-\d+):?\s*(.*?)\s*$"


def parse_backlog_markdown(content: str) -> Backlog:
    """Parse markdown into a Backlog.

    Args:
        content: Markdown text

    Returns:
        Backlog with stories in document order

    Raises:
        BacklogFormatError: If no stories are found or a story id repeats
    """
    project = _extract_project(content)
    sections = _split_into_story_sections(content)
    if not sections:
        raise BacklogFormatError("No user stories found (expected '### US-001: Title')")

    stories: list[UserStory] = []
    seen: set[str] = set()
    for index, section in enumerate(sections, start=1):
        story = _parse_story_section(section, index)
        if story.id in seen:
            raise BacklogFormatError(f"Duplicate story id {story.id}")
        seen.add(story.id)
        stories.append(story)

    return Backlog(
        project=project,
        branch_name=generate_branch_name(project),
        description=_extract_introduction(content),
        user_stories=stories,
    )


def parse_backlog_file(path: str | Path) -> Backlog:
    """Read and parse a markdown stories file."""
    return parse_backlog_markdown(Path(path).read_text(encoding="utf-8"))


def generate_branch_name(project: str) -> str:
    """Derive a git branch name from a project name.

    Example: "Task Manager v2" -> "feature/task-manager-v2"
    """
    kebab = re.sub(r"[^a-z0-9]+", "-", project.lower()).strip("-")
    return f"feature/{kebab or 'unnamed'}"


def _extract_project(content: str) -> str:
    """Project name from the first H1, without a leading "PRD:" label."""
    match = re.search(r"^#\s+(?:PRD:\s*)?(.+?)\s*$", content, re.MULTILINE)
    if match:
        return match.group(1)
    return "Unnamed Project"


def _extract_introduction(content: str) -> str:
    """First paragraph of an Introduction or Overview section."""
    match = re.search(
        r"^##\s+(?:Introduction|Overview)\s*$\n(.*?)(?=^#|\Z)",
        content,
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    )
    if not match:
        return ""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", match.group(1))]
    for paragraph in paragraphs:
        if paragraph:
            return " ".join(line.strip() for line in paragraph.splitlines())
    return ""


def _split_into_story_sections(content: str) -> list[str]:
    """Split content at story headers (### US-001: Title).

    A section ends at the next story header or at any H1/H2 heading.
    """
    matches = list(re.finditer(STORY_HEADER_PATTERN, content, re.MULTILINE))
    sections = []
    for i, match in enumerate(matches):
        start = match.start()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        section = content[start:end]
        heading = re.search(r"^#{1,2}\s", section, re.MULTILINE)
        if heading:
            section = section[: heading.start()]
        sections.append(section)
    return sections


def _parse_story_section(section: str, index: int) -> UserStory:
    header = re.match(STORY_HEADER_PATTERN, section, re.MULTILINE)
    assert header is not None
    story_id = header.group(1)

    return UserStory(
        id=story_id,
        title=header.group(2),
        description=_extract_field(section, "Description"),
        acceptance_criteria=_extract_acceptance_criteria(section),
        priority=_extract_priority(section, story_id, default=index),
        dependencies=_extract_dependencies(section),
        notes=_extract_field(section, "Notes"),
    )


def _extract_field(section: str, name: str) -> str:
    """Inline value of a **Name:** field, continued on following plain lines."""
    match = re.search(
        rf"^\s*\*\*{name}:\*\*[ \t]*(.*?)(?=\n\s*\n|\n\s*\*\*|\n\s*-\s|\Z)",
        section,
        re.MULTILINE | re.DOTALL,
    )
    if not match:
        return ""
    return " ".join(line.strip() for line in match.group(1).splitlines() if line.strip())


def _extract_priority(section: str, story_id: str, default: int) -> int:
    raw = _extract_field(section, "Priority")
    if not raw:
        return default
    if not raw.isdigit():
        raise BacklogFormatError(
            f"Story {story_id} has invalid priority {raw!r}; expected a non-negative integer"
        )
    return int(raw)


def _extract_dependencies(section: str) -> list[str] | None:
    """Story ids listed after **Dependencies:** ("none" or absent gives None)."""
    raw = _extract_field(section, "Dependencies")
    if not raw or raw.lower() in ("none", "n/a", "-"):
        return None
    return re.findall(r"[A-Za-z][A-Za-z0-9]*-\d+", raw)


def _extract_acceptance_criteria(section: str) -> list[str]:
    """Checkbox items anywhere in the story, or bullets under the criteria header."""
    criteria = [
        m.group(1).strip()
        for m in re.finditer(r"^\s*-\s*\[[ xX]\]\s*(.+?)\s*$", section, re.MULTILINE)
    ]
    if criteria:
        return criteria

    ac_match = re.search(r"\*\*Acceptance Criteria:\*\*", section)
    if not ac_match:
        return []
    for match in re.finditer(r"^\s*-\s+(.+?)\s*$", section[ac_match.end() :], re.MULTILINE):
        criterion = match.group(1)
        if not criterion.startswith("**"):
            criteria.append(criterion)
    return criteria
