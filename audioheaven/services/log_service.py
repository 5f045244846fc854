"""JSONL logging service for application events.

Writes one JSON object per line to hive-partitioned daily .jsonl files:
logs/json/year=YYYY/month=MM/day=DD/events.jsonl
"""

import json
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class LogService:
    """JSONL log service with thread-safe file writes."""

    def __init__(self, log_dir: Path) -> None:
        """Initialize the log service.

        Args:
            log_dir: Root directory for log files (created on first write)
        """
        self.log_dir = Path(log_dir)
        self._write_lock = threading.Lock()

    def _get_log_dir(self) -> Path:
        """Get the log directory, creating it if needed."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return self.log_dir

    def _get_hive_dir(self, subdir: str, dt: datetime) -> Path:
        """Build a hive-partitioned directory path and create it.

        Args:
            subdir: Top-level subdirectory ('json')
            dt: Datetime to partition by

        Returns:
            Path like logs/json/year=2026/month=02/day=08/
        """
        log_dir = self._get_log_dir()
        hive_dir = (
            log_dir
            / subdir
            / f"year={dt.year:04d}"
            / f"month={dt.month:02d}"
            / f"day={dt.day:02d}"
        )
        hive_dir.mkdir(parents=True, exist_ok=True)
        return hive_dir

    @staticmethod
    def _extract_date_from_hive_path(path: Path) -> str | None:
        """Extract YYYY-MM-DD date string from a hive-partitioned path.

        Returns:
            Date string like '2026-02-08', or None if not found
        """
        match = re.search(r"year=(\d{4})[/\\]month=(\d{2})[/\\]day=(\d{2})", str(path))
        if match:
            return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
        return None

    def _get_current_log_file(self) -> Path:
        """Get the path to today's events log file (hive-partitioned)."""
        now = datetime.now(UTC)
        hive_dir = self._get_hive_dir("json", now)
        return hive_dir / "events.jsonl"

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a log entry to the current day's JSONL file.

        Args:
            level: Log level (INFO, WARNING, ERROR)
            category: Event category (app, upload, job, cleanup)
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        line = json.dumps(entry, default=str)

        with self._write_lock:
            log_file = self._get_current_log_file()
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an INFO-level event."""
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a WARNING-level event."""
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an ERROR-level event."""
        self.log("ERROR", category, event, message, metadata)

    def list_log_files(self) -> list[dict[str, Any]]:
        """List all event log files with metadata, newest first."""
        json_dir = self._get_log_dir() / "json"
        result: list[dict[str, Any]] = []

        if json_dir.exists():
            for f in sorted(json_dir.rglob("*.jsonl"), reverse=True):
                result.append({
                    "date": self._extract_date_from_hive_path(f),
                    "filename": f.name,
                    "relative_path": str(f.relative_to(self.log_dir)),
                    "size_bytes": f.stat().st_size,
                })

        return result

    def _iter_entries(self, files: list[Path]) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for log_file in files:
            try:
                with open(log_file, encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            entries.append(json.loads(line))
                        except json.JSONDecodeError:
                            continue
            except OSError:
                continue
        return entries

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Read and filter log entries with pagination.

        Args:
            date: Filter by date (YYYY-MM-DD). None = all dates.
            level: Filter by level (INFO/WARNING/ERROR)
            category: Filter by category
            search: Full-text search in message and event fields
            offset: Number of entries to skip
            limit: Maximum entries to return

        Returns:
            Dict with entries, total count, offset, limit
        """
        json_dir = self._get_log_dir() / "json"

        if date:
            try:
                dt = datetime.strptime(date, "%Y-%m-%d")
            except ValueError:
                return {"entries": [], "total": 0, "offset": offset, "limit": limit}
            hive_path = (
                json_dir
                / f"year={dt.year:04d}"
                / f"month={dt.month:02d}"
                / f"day={dt.day:02d}"
                / "events.jsonl"
            )
            files = [hive_path] if hive_path.exists() else []
        else:
            files = sorted(json_dir.rglob("events.jsonl"), reverse=True) if json_dir.exists() else []

        search_lower = search.lower() if search else None
        filtered: list[dict[str, Any]] = []
        for entry in self._iter_entries(files):
            if level and entry.get("level", "").upper() != level.upper():
                continue
            if category and entry.get("category") != category:
                continue
            if search_lower:
                msg = entry.get("message", "").lower()
                evt = entry.get("event", "").lower()
                if search_lower not in msg and search_lower not in evt:
                    continue
            filtered.append(entry)

        # Newest first
        filtered.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

        return {
            "entries": filtered[offset : offset + limit],
            "total": len(filtered),
            "offset": offset,
            "limit": limit,
        }

    def get_log_stats(self) -> dict[str, Any]:
        """Get aggregate statistics across all event log files.

        Returns:
            Dict with counts by level/category, date range, totals
        """
        json_dir = self._get_log_dir() / "json"
        event_files = sorted(json_dir.rglob("events.jsonl")) if json_dir.exists() else []

        level_counts: dict[str, int] = {}
        category_counts: dict[str, int] = {}
        total_entries = 0
        total_size = 0
        today_count = 0
        today_str = datetime.now(UTC).strftime("%Y-%m-%d")
        dates: list[str] = []

        for log_file in event_files:
            total_size += log_file.stat().st_size
            date_str = self._extract_date_from_hive_path(log_file)
            if date_str and date_str not in dates:
                dates.append(date_str)

            for entry in self._iter_entries([log_file]):
                total_entries += 1
                if date_str == today_str:
                    today_count += 1
                lvl = entry.get("level", "UNKNOWN")
                level_counts[lvl] = level_counts.get(lvl, 0) + 1
                cat = entry.get("category", "unknown")
                category_counts[cat] = category_counts.get(cat, 0) + 1

        dates.sort()

        return {
            "total_entries": total_entries,
            "today_entries": today_count,
            "total_size_bytes": total_size,
            "level_counts": level_counts,
            "category_counts": category_counts,
            "date_range": {
                "earliest": dates[0] if dates else None,
                "latest": dates[-1] if dates else None,
            },
            "file_count": len(event_files),
        }
