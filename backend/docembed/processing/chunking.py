"""
Window Chunker  —  Overlapping Character Windows with Boundary Snapping
═════════════════════════════════════════════════════════════════════════

Input is the plain text produced by the extraction subsystem (OCR/PDF).
Output is an ordered list of trimmed passages ready for embedding.

Algorithm
─────────
  1. Take a window of up to CHUNK_SIZE characters starting at `start`.
  2. If the window does not reach the end of the text, look backwards for
     the last "." or newline. When that boundary lies past the middle of
     the window, cut the window just after it (no mid-sentence splits).
  3. Emit the trimmed window.
  4. Next window starts at start + len(window) - OVERLAP, so consecutive
     chunks share OVERLAP characters of context.
  5. Stop once a window has reached the end of the text.

Windows whose trimmed length is MIN_CHUNK_CHARS or less are dropped, not
merged into a neighbour. Layout (tables, columns) is not parsed; the
classifier labels content after the fact.

Pure and deterministic: the same (text, chunk_size, overlap) always yields
the same list.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from docembed.schemas.documents import MIN_CHUNK_CHARS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults (overridden by PipelineConfig)
# ---------------------------------------------------------------------------

CHUNK_SIZE      = 1500   # ~375 tokens at 4 chars/token
CHUNK_OVERLAP   = 200

# A boundary must fall beyond this fraction of the window to be used
BOUNDARY_MIN_FRACTION = 0.5

_BOUNDARY_CHARS = (".", "\n")


def _snap_to_boundary(window: str, chunk_size: int) -> str:
    """Cut `window` after its last sentence/line boundary if it is far enough in."""
    break_point = max(window.rfind(ch) for ch in _BOUNDARY_CHARS)
    if break_point > chunk_size * BOUNDARY_MIN_FRACTION:
        return window[: break_point + 1]
    return window


def chunk_text(
    text:       str,
    chunk_size: int = CHUNK_SIZE,
    overlap:    int = CHUNK_OVERLAP,
    min_chars:  int = MIN_CHUNK_CHARS,
) -> list[str]:
    """
    Split `text` into overlapping, boundary-snapped windows.

    Args:
        text:       Extracted document text.
        chunk_size: Target window length in characters.
        overlap:    Characters re-included at the start of the next window.
                    Must be smaller than chunk_size.
        min_chars:  Trimmed windows of this length or shorter are dropped.

    Returns:
        Trimmed chunk strings in document order.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")

    chunks: list[str] = []
    text_len = len(text)
    start = 0

    while start < text_len:
        end = min(start + chunk_size, text_len)
        window = text[start:end]

        if end < text_len:
            window = _snap_to_boundary(window, chunk_size)

        trimmed = window.strip()
        if len(trimmed) > min_chars:
            chunks.append(trimmed)

        if start + len(window) >= text_len:
            break

        # Always move forward, even when a snapped window is shorter than the overlap
        start = max(start + 1, start + len(window) - overlap)

    return chunks


@dataclass(frozen=True)
class WindowChunker:
    """
    Chunker bound to one configuration.

    Usage:
        chunker = WindowChunker(chunk_size=1500, overlap=200)
        passages = chunker.chunk(document.extracted_text)
    """
    chunk_size: int = CHUNK_SIZE
    overlap:    int = CHUNK_OVERLAP
    min_chars:  int = MIN_CHUNK_CHARS

    def __post_init__(self) -> None:
        if not 0 <= self.overlap < self.chunk_size:
            raise ValueError(
                f"overlap={self.overlap} must be >= 0 and smaller than chunk_size={self.chunk_size}"
            )

    def chunk(self, text: str) -> list[str]:
        chunks = chunk_text(text, self.chunk_size, self.overlap, self.min_chars)
        logger.debug(
            "WindowChunker | chars=%d chunks=%d size=%d overlap=%d",
            len(text), len(chunks), self.chunk_size, self.overlap,
        )
        return chunks


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 4 characters per token, rounded up."""
    return math.ceil(len(text) / 4)
