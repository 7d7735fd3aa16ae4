"""Utilities for safe structured logging fields."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def safe_log_path(path: str | Path | None) -> str:
    """Keep the file suffix for diagnostics; user-supplied names are hashed."""
    if path is None:
        return "path-missing"
    candidate = Path(path)
    return f"{safe_log_identifier(candidate.name, prefix='file')}{candidate.suffix.lower()}"
