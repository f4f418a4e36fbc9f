from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from compound_loop.state.storage import atomic_write_text, utcnow_iso

logger = logging.getLogger(__name__)

CATEGORIES = ("learning", "error_fix", "pattern", "discovery", "gotcha", "fix")
DEFAULT_LIMITS = {
    "learning": 50,
    "error_fix": 20,
    "pattern": 30,
    "discovery": 30,
    "gotcha": 30,
    "fix": 20,
}
CATEGORY_TITLES = {
    "learning": "Learnings",
    "error_fix": "Error Fixes",
    "pattern": "Patterns",
    "discovery": "Discoveries",
    "gotcha": "Gotchas",
    "fix": "Fixes",
}
EMPTY_PLACEHOLDER = "None yet"


@dataclass(slots=True)
class ContextEntry:
    text: str
    at: str = field(default_factory=utcnow_iso)
    spec: str | None = None
    iteration: int | None = None
    error: str | None = None
    fix: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ContextEntry:
        iteration = payload.get("iteration")
        return cls(
            text=str(payload.get("text", "")),
            at=str(payload.get("at") or utcnow_iso()),
            spec=payload.get("spec") if isinstance(payload.get("spec"), str) else None,
            iteration=iteration if isinstance(iteration, int) else None,
            error=payload.get("error") if isinstance(payload.get("error"), str) else None,
            fix=payload.get("fix") if isinstance(payload.get("fix"), str) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    def render(self) -> str:
        if self.error and self.fix:
            line = f"{self.text} (error: {self.error} -> fix: {self.fix})"
        else:
            line = self.text
        origin = self.spec or ""
        if self.iteration is not None:
            origin = f"{origin}#{self.iteration}" if origin else f"#{self.iteration}"
        return f"- {line} [{origin}]" if origin else f"- {line}"


def _parse_revision(value: Any, path: Path) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        logger.warning("Context store %s has invalid revision %r; resetting to 0", path, value)
        return 0


class ContextStore:
    """Per-project learnings accumulated across iterations.

    The store is loaded in full at the start of every pass, appended to, pruned
    to the per-category ceilings and written back atomically. Insertion order
    is recency order; pruning drops the oldest entries.
    """

    SCHEMA_VERSION = 1

    def __init__(self, path: Path, *, limits: dict[str, int] | None = None) -> None:
        self.path = path
        self.limits = dict(DEFAULT_LIMITS)
        if limits:
            self.limits.update({key: max(0, int(value)) for key, value in limits.items()})
        self.revision = 0
        self._entries: dict[str, list[ContextEntry]] = {category: [] for category in CATEGORIES}

    @classmethod
    def open(cls, path: Path, *, limits: dict[str, int] | None = None) -> ContextStore:
        store = cls(path, limits=limits)
        store.load()
        return store

    def _reset_entries(self) -> None:
        self._entries = {category: [] for category in CATEGORIES}

    def load(self) -> dict[str, list[ContextEntry]]:
        """Re-read the store from disk. A corrupt store degrades to an empty one."""
        self._reset_entries()
        self.revision = 0
        if not self.path.exists():
            return self.grouped()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Context store %s is unreadable, starting empty: %s", self.path, exc)
            return self.grouped()

        if isinstance(raw, dict) and "data" in raw and "schema_version" in raw:
            self.revision = _parse_revision(raw.get("revision"), self.path)
            data = raw.get("data")
        else:
            data = raw
        if not isinstance(data, dict):
            logger.warning("Context store %s has unexpected shape, starting empty", self.path)
            return self.grouped()

        for category, items in data.items():
            if category not in self._entries:
                logger.debug("Ignoring unknown context category %r", category)
                continue
            if not isinstance(items, list):
                logger.warning("Context category %r is not a list; dropping it", category)
                continue
            self._entries[category] = [
                ContextEntry.from_dict(item)
                for item in items
                if isinstance(item, dict) and str(item.get("text", "")).strip()
            ]
        return self.grouped()

    def grouped(self) -> dict[str, list[ContextEntry]]:
        return {category: list(entries) for category, entries in self._entries.items()}

    def entries(self, category: str) -> list[ContextEntry]:
        self._validate_category(category)
        return list(self._entries[category])

    def count(self, category: str | None = None) -> int:
        if category is not None:
            return len(self.entries(category))
        return sum(len(entries) for entries in self._entries.values())

    @staticmethod
    def _validate_category(category: str) -> None:
        if category not in CATEGORIES:
            raise ValueError(
                f"Unknown context category {category!r}; expected one of {', '.join(CATEGORIES)}"
            )

    def append(
        self,
        category: str,
        text: str,
        *,
        spec: str | None = None,
        iteration: int | None = None,
        error: str | None = None,
        fix: str | None = None,
    ) -> ContextEntry:
        self._validate_category(category)
        entry = ContextEntry(
            text=" ".join(text.split()),
            spec=spec,
            iteration=iteration,
            error=" ".join(error.split())[:500] if error else None,
            fix=" ".join(fix.split())[:500] if fix else None,
        )
        self._entries[category].append(entry)
        return entry

    def prune(self) -> int:
        removed = 0
        for category, entries in self._entries.items():
            limit = self.limits.get(category, DEFAULT_LIMITS[category])
            excess = len(entries) - limit
            if excess > 0:
                self._entries[category] = entries[excess:]
                removed += excess
        if removed:
            logger.debug("Pruned %d context entries", removed)
        return removed

    def reset(self) -> None:
        self._reset_entries()

    def render_sections(self) -> dict[str, str]:
        sections: dict[str, str] = {}
        for category in CATEGORIES:
            entries = self._entries[category]
            if entries:
                sections[category] = "\n".join(entry.render() for entry in entries)
            else:
                sections[category] = f"- {EMPTY_PLACEHOLDER}"
        return sections

    def render(self, categories: list[str] | None = None) -> str:
        selected = categories or list(CATEGORIES)
        for category in selected:
            self._validate_category(category)
        sections = self.render_sections()
        blocks = [f"### {CATEGORY_TITLES[category]}\n{sections[category]}" for category in selected]
        return "\n\n".join(blocks)

    def save(self) -> None:
        self.revision += 1
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": self.revision,
            "updated_at": utcnow_iso(),
            "data": {
                category: [entry.to_dict() for entry in entries]
                for category, entries in self._entries.items()
            },
        }
        atomic_write_text(self.path, json.dumps(envelope, ensure_ascii=False, indent=2) + "\n")
