"""
Chunk content-type classifier.

Labels a chunk as table, procedure, specification or narrative from the
shape of its lines alone. No layout metadata is consulted; a chunk cut
from a PDF table is recognised by its pipes/tabs, a repair procedure by
its numbered steps, a spec sheet by its "Key: value" lines.

Checks run in fixed priority order and the first one that clears its
threshold wins:

  table          >= 30% of lines have 2+ "|" or any tab
  procedure      >= 40% of lines start with "1.", "2)", "-", "•" or "Step N"
  specification  >= 40% of lines look like "Key: value" (key 1-30 chars)
  narrative      otherwise
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from docembed.schemas.documents import ChunkType

_STEP_RE = re.compile(r"^\s*(\d+[.):]|-|•|step\s+\d)", re.IGNORECASE)
_SPEC_RE = re.compile(r"^[A-Za-z][^:]{0,29}:\s+\S")


@dataclass(frozen=True)
class ClassifierThresholds:
    table:         float = 0.3
    procedure:     float = 0.4
    specification: float = 0.4


DEFAULT_THRESHOLDS = ClassifierThresholds()


def _is_table_line(line: str) -> bool:
    return line.count("|") >= 2 or "\t" in line


def _is_step_line(line: str) -> bool:
    return bool(_STEP_RE.match(line))


def _is_spec_line(line: str) -> bool:
    return bool(_SPEC_RE.match(line))


def _fraction(lines: list[str], predicate) -> float:
    return sum(1 for line in lines if predicate(line)) / len(lines)


def classify_chunk(
    text: str,
    thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> ChunkType:
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return ChunkType.NARRATIVE

    if _fraction(lines, _is_table_line) >= thresholds.table:
        return ChunkType.TABLE
    if _fraction(lines, _is_step_line) >= thresholds.procedure:
        return ChunkType.PROCEDURE
    if _fraction(lines, _is_spec_line) >= thresholds.specification:
        return ChunkType.SPECIFICATION
    return ChunkType.NARRATIVE
