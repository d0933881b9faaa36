"""
Job Utilities

Shared helpers for handlers, the runner and the client-facing operations:
progress bookkeeping, JSON-safe payloads, file names and formatting.
"""

import os
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote

_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


def safe_json_value(value: Any) -> Any:
    """Convert value to JSON-safe format."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [safe_json_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): safe_json_value(v) for k, v in value.items()}
    return str(value)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def format_file_size(size: float) -> str:
    """Format file size in human-readable form."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def sanitize_filename(name: str, fallback: str = "output") -> str:
    """Strip path separators and control characters from a file name."""
    cleaned = _UNSAFE_FILENAME.sub("_", os.path.basename(name or "")).strip(" .")
    return cleaned or fallback


def content_disposition(filename: str) -> str:
    """Build an attachment Content-Disposition header value."""
    ascii_name = filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    if ascii_name == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def unique_archive_name(name: str, used: Set[str]) -> str:
    """Return `name`, or `name (2).ext`, `name (3).ext`... if already used."""
    candidate = name
    stem, ext = os.path.splitext(name)
    counter = 2
    while candidate in used:
        candidate = f"{stem} ({counter}){ext}"
        counter += 1
    used.add(candidate)
    return candidate


class ProgressTracker:
    """
    Helper for tracking progress across multiple stages.

    Usage:
        tracker = ProgressTracker([("loading", 20), ("rendering", 70), ("saving", 10)])

        ctx.update_progress(tracker.start("loading"))
        for i, row in enumerate(rows):
            ctx.update_progress(tracker.progress("rendering", i, len(rows)))
    """

    def __init__(self, stages: List[tuple]):
        """Initialize with (stage_name, weight) tuples whose weights sum to 100."""
        self.stages: Dict[str, Dict[str, int]] = {}
        cumulative = 0
        for name, weight in stages:
            self.stages[name] = {"start": cumulative, "weight": weight, "end": cumulative + weight}
            cumulative += weight

    def start(self, name: str) -> int:
        stage = self.stages.get(name)
        return stage["start"] if stage else 0

    def progress(self, name: str, current: int, total: int) -> int:
        stage: Optional[Dict[str, int]] = self.stages.get(name)
        if not stage or total <= 0:
            return self.start(name)
        fraction = min(current / total, 1.0)
        return int(stage["start"] + stage["weight"] * fraction)
