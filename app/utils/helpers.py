"""
Common utility functions and helpers.
"""
import asyncio
import re
from typing import Awaitable, List, TypeVar

T = TypeVar("T")

_NON_WORD_RE = re.compile(r"[^\w\s]")


class StageTimeoutError(TimeoutError):
    """Raised when a downstream call exceeds its configured time limit."""


async def run_with_timeout(awaitable: Awaitable[T], seconds: float, what: str) -> T:
    """
    Await *awaitable* for at most *seconds*.

    Raises:
        StageTimeoutError: with a readable message naming *what* timed out.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise StageTimeoutError(f"{what} timed out after {seconds:g}s") from exc


def tokenize(text: str) -> List[str]:
    """
    Lower-case keyword tokens for BM25 scoring.

    Punctuation becomes whitespace and tokens of two characters or fewer
    are dropped.
    """
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    return [tok for tok in cleaned.split() if len(tok) > 2]


def word_count(text: str) -> int:
    """Whitespace word count."""
    return len(text.split())


def safe_filename(name: str, default: str) -> str:
    """Strip characters that would break a Content-Disposition header."""
    cleaned = re.sub(r'[\\/"]+|[^\x20-\x7e]+', "_", name or "").strip()
    return cleaned or default
