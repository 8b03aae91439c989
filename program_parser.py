"""Parser for ``.list``/``.lst`` playlist files."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from content_scanner import PROGRAM_EXTENSIONS, normalize_title


SONG = "song"
SECTION = "section"


@dataclass(frozen=True)
class ParsedItem:
    kind: str
    name: str


@dataclass
class ParsedProgram:
    title: Optional[str] = None
    items: List[ParsedItem] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.items


def parse_program(text: str) -> ParsedProgram:
    """Parse playlist text into an ordered list of song and section items.

    ``{Title}`` lines set the program title (the last one wins), ``#Name``
    lines open a section and every other non-blank line names a song. A song
    line may carry a ``:parameter`` suffix, which is dropped.
    """

    parsed = ParsedProgram()
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("{") and line.endswith("}"):
            parsed.title = line[1:-1].strip() or None
            continue
        if line.startswith("#"):
            section_name = line[1:].strip()
            if section_name:
                parsed.items.append(ParsedItem(SECTION, section_name))
            continue
        colon_index = line.find(":")
        song_name = line[:colon_index] if colon_index > 0 else line
        song_name = normalize_title(song_name)
        if song_name:
            parsed.items.append(ParsedItem(SONG, song_name))
    return parsed


def _comparable(value: str) -> str:
    return normalize_title(value).casefold()


def program_base_title(file_name: str) -> str:
    path = Path(file_name)
    stem = path.stem if path.suffix.lower() in PROGRAM_EXTENSIONS else path.name
    return normalize_title(stem)


def derive_program_title(file_name: str, parsed_title: Optional[str]) -> str:
    base = program_base_title(file_name)
    if parsed_title and _comparable(parsed_title) != _comparable(base):
        return f"{base} - {parsed_title}"
    return base
