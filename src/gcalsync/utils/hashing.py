"""Text normalization and hashing helpers shared by the comparator and the cache.

Goals
- Treat two property values as equal regardless of non-semantic differences:
  - Line endings (CRLF vs CR vs LF)
  - Blank lines and surrounding whitespace
  - Empty string vs. missing value
- Produce short, stable file-name suffixes for backups and to-do blocks.

Public API
- normalize_line_breaks(text: str | None) -> str | None
- normalize_text(value: object) -> str | None
- texts_equal(a: object, b: object) -> bool
- sha256_hex(data: str | bytes) -> str
- url_hash(url: str) -> str
"""

from __future__ import annotations

from hashlib import sha256

__all__ = [
    "normalize_line_breaks",
    "normalize_text",
    "sha256_hex",
    "texts_equal",
    "url_hash",
]


def normalize_line_breaks(text: str | None) -> str | None:
    """Collapse CRLF/CR to LF, drop blank lines and trim every remaining line."""
    if text is None:
        return None
    t = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln.strip() for ln in t.split("\n")]
    return "\n".join(ln for ln in lines if ln)


def normalize_text(value: object) -> str | None:
    """Normalized string form of a property value; empty means absent (None)."""
    if value is None:
        return None
    out = normalize_line_breaks(str(value))
    return out or None


def texts_equal(a: object, b: object) -> bool:
    return normalize_text(a) == normalize_text(b)


def sha256_hex(data: str | bytes) -> str:
    """Compute sha256 hex digest."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return sha256(data).hexdigest()


def url_hash(url: str) -> str:
    """Short, file-name safe fingerprint of a calendar URL."""
    return sha256_hex(url)[:12]
