"""Section splitting for generated documentation.

Splits raw model output into ordered, titled sections using markdown ATX
heading markers. Pure and deterministic: the same text always yields the
same sections, and nothing outside the arguments is read or written.

Rules:
- The section rank is the top-most of rank 1 / rank 2 present in the
  text. If any "# " heading exists, only those split; "## " and deeper
  headings stay inside the current section's content. Otherwise "## "
  headings split.
- Non-empty text before the first section heading becomes "Introduction".
- Text with no section heading at all becomes one section whose title is
  picked by keyword scoring against the document categories.
- Section content keeps its indentation; only blank lines around it are
  dropped.
- Lines inside closed fenced code blocks are never treated as headings.
"""

import logging
import re
from typing import Optional

from src.executor.schemas import Section

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")
_FENCE = re.compile(r"^[ \t]{0,3}(`{3,}|~{3,})")

INTRODUCTION_TITLE = "Introduction"
DEFAULT_TITLE = "Documentation"

# Title -> keywords. Order breaks ties.
_TITLE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Requirements Document", ("requirement", "user stor", "acceptance criteria", "scope", "functional")),
    ("Frontend Guidelines", ("frontend", "front-end", "component", "styling", "css", "ui ", "accessibility")),
    ("Backend Structure", ("backend", "back-end", "database", "schema", "endpoint", "server", "architecture")),
    ("Application Flow", ("flow", "journey", "navigation", "onboarding", "sequence", "state")),
    ("Technology Stack", ("tech stack", "technology", "framework", "library", "dependenc", "version")),
    ("System Prompts", ("prompt", "system message", "instruction", "persona")),
    ("File Structure", ("file structure", "directory", "folder", "src/", "tree")),
]


def _fenced_lines(lines: list[str]) -> set[int]:
    """Indexes of lines inside closed fenced code blocks, fences included.

    A fence closes on the same character repeated at least as many times as
    the opener, with nothing after it. An opener that never closes is read as
    a plain line, so a truncated code block does not swallow later headings.
    """
    fenced: set[int] = set()
    opener: Optional[tuple[int, str, int]] = None
    i = 0
    while i < len(lines):
        match = _FENCE.match(lines[i])
        if opener is None:
            if match:
                marker = match.group(1)
                opener = (i, marker[0], len(marker))
        elif (
            match
            and match.group(1)[0] == opener[1]
            and len(match.group(1)) >= opener[2]
            and not lines[i][match.end():].strip()
        ):
            fenced.update(range(opener[0], i + 1))
            opener = None
        i += 1
        if i == len(lines) and opener is not None:
            # unclosed: rescan from the line after the opener
            i = opener[0] + 1
            opener = None
    return fenced


def _scan_headings(lines: list[str]) -> list[tuple[int, int, str]]:
    """Return (line_index, rank, title) for every heading outside code fences."""
    fenced = _fenced_lines(lines)
    headings: list[tuple[int, int, str]] = []
    for i, line in enumerate(lines):
        if i in fenced:
            continue
        match = _HEADING.match(line)
        if match:
            headings.append((i, len(match.group(1)), match.group(2).strip()))
    return headings


def _join_trimmed(lines: list[str]) -> str:
    """Join lines, dropping blank lines at both ends. Indentation is kept."""
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


def detect_title(text: str) -> str:
    """Pick a category title for heading-less text by keyword counts.

    Ties go to the category listed first; no hits gives DEFAULT_TITLE.
    """
    lowered = text.lower()
    best_title = DEFAULT_TITLE
    best_score = 0
    for title, keywords in _TITLE_KEYWORDS:
        score = sum(lowered.count(keyword) for keyword in keywords)
        if score > best_score:
            best_title, best_score = title, score
    return best_title


def split_sections(text: str) -> list[Section]:
    """Split raw generated text into titled sections.

    Args:
        text: Raw model output

    Returns:
        Ordered sections. Empty or whitespace-only input gives [].
    """
    if not text or not text.strip():
        return []

    lines = text.splitlines()
    headings = _scan_headings(lines)
    ranks = {rank for _, rank, _ in headings}
    section_rank = 1 if 1 in ranks else 2 if 2 in ranks else None

    if section_rank is None:
        content = text.strip()
        return [Section(title=detect_title(content), content=content)]

    boundaries = [(i, title) for i, rank, title in headings if rank == section_rank]
    sections: list[Section] = []

    preamble = _join_trimmed(lines[: boundaries[0][0]])
    if preamble:
        sections.append(Section(title=INTRODUCTION_TITLE, content=preamble))

    for n, (start, title) in enumerate(boundaries):
        end = boundaries[n + 1][0] if n + 1 < len(boundaries) else len(lines)
        content = _join_trimmed(lines[start + 1 : end])
        sections.append(Section(title=title, content=content))

    logger.debug(
        f"Split {len(text):,} chars into {len(sections)} sections at rank {section_rank}"
    )
    return sections
