"""On-disk checkpoint storage.

Storage Structure
-----------------
<checkpoints_dir>/
├── data/<id>.json             # Full AgentCheckpoint
├── summaries/<id>.json        # CheckpointSummary (what search reads)
├── analytics/<id>.json        # Analytics event log
└── checkpoint-index.json      # id -> descriptor, plus frequency tables

Every save rewrites record + summary + index entry. The index frequency
tables are adjusted incrementally: the previous descriptor's counts are
subtracted and the new ones added, so they always equal the number of
checkpoints carrying each tag/context type.

Concurrency: read-modify-write of a record is serialized per checkpoint id;
index updates are serialized by one store-level lock.
"""

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from agentdeck.atomic import atomic_write_json, read_json
from agentdeck.checkpoint import (
    SORT_KEYS,
    AgentCheckpoint,
    CheckpointSearchQuery,
    CheckpointSearchResult,
    CheckpointSummary,
    StorageStats,
)
from agentdeck.errors import CheckpointNotFound, InvalidCheckpoint
from agentdeck.types import is_safe_id

logger = logging.getLogger(__name__)

INDEX_FILE = "checkpoint-index.json"
RECENT_DAYS = 7
SUGGESTION_LIMIT = 10


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _empty_index() -> dict[str, Any]:
    return {
        "last_updated": _now_iso(),
        "checkpoints": {},
        "search_metadata": {
            "tag_frequency": {},
            "context_type_frequency": {},
            "expertise_areas": [],
        },
    }


class CheckpointStore:
    """Persist checkpoints as JSON documents under one directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._index_lock = threading.Lock()

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def summaries_dir(self) -> Path:
        return self.root / "summaries"

    @property
    def analytics_dir(self) -> Path:
        return self.root / "analytics"

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    def _data_path(self, checkpoint_id: str) -> Path:
        return self.data_dir / f"{checkpoint_id}.json"

    def _summary_path(self, checkpoint_id: str) -> Path:
        return self.summaries_dir / f"{checkpoint_id}.json"

    def _analytics_path(self, checkpoint_id: str) -> Path:
        return self.analytics_dir / f"{checkpoint_id}.json"

    @contextmanager
    def _locked(self, checkpoint_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(checkpoint_id, threading.Lock())
        with lock:
            yield

    @staticmethod
    def _check_id(checkpoint_id: str) -> None:
        # Security: ids become file names
        if not is_safe_id(checkpoint_id):
            raise CheckpointNotFound(f"Invalid checkpoint id: {checkpoint_id!r}", checkpoint_id=checkpoint_id)

    # ========================================================================
    # Records
    # ========================================================================

    def exists(self, checkpoint_id: str) -> bool:
        try:
            self._check_id(checkpoint_id)
        except CheckpointNotFound:
            return False
        return self._data_path(checkpoint_id).exists()

    def save(self, checkpoint: AgentCheckpoint) -> Path:
        """Write record, summary, and index entry.

        Raises:
            InvalidCheckpoint: The id is unusable as a file name
            OSError: A write failed
        """
        if not is_safe_id(checkpoint.id):
            raise InvalidCheckpoint(f"Invalid checkpoint id: {checkpoint.id!r}", errors=["id"])
        with self._locked(checkpoint.id):
            return self._write(checkpoint)

    def _write(self, checkpoint: AgentCheckpoint) -> Path:
        path = self._data_path(checkpoint.id)
        result = atomic_write_json(path, checkpoint.to_dict())
        if result.is_err():
            raise OSError(f"Failed to save checkpoint: {result.unwrap_err().message}")

        summary = CheckpointSummary.from_checkpoint(checkpoint)
        result = atomic_write_json(self._summary_path(checkpoint.id), summary.to_dict())
        if result.is_err():
            raise OSError(f"Failed to save checkpoint summary: {result.unwrap_err().message}")

        self._index_put(checkpoint)
        logger.debug(f"Saved checkpoint {checkpoint.id}")
        return path

    def _read(self, checkpoint_id: str) -> AgentCheckpoint:
        self._check_id(checkpoint_id)
        data = read_json(self._data_path(checkpoint_id))
        if not isinstance(data, dict):
            raise CheckpointNotFound(f"Checkpoint {checkpoint_id} not found", checkpoint_id=checkpoint_id)
        try:
            return AgentCheckpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Corrupt checkpoint {checkpoint_id}: {e}")
            raise CheckpointNotFound(
                f"Checkpoint {checkpoint_id} is unreadable", checkpoint_id=checkpoint_id
            ) from e

    def load(self, checkpoint_id: str, track_usage: bool = True) -> AgentCheckpoint:
        """Load a checkpoint; with ``track_usage`` bump usage_count/last_used.

        Raises:
            CheckpointNotFound: Missing, unreadable, or invalid id
        """
        if not track_usage:
            return self._read(checkpoint_id)

        return self.update(
            checkpoint_id,
            lambda cp: replace(cp, usage_count=cp.usage_count + 1, last_used=_now_iso()),
        )

    def update(
        self,
        checkpoint_id: str,
        change: Callable[[AgentCheckpoint], AgentCheckpoint],
    ) -> AgentCheckpoint:
        """Apply ``change`` to a stored checkpoint under its lock and save."""
        self._check_id(checkpoint_id)
        with self._locked(checkpoint_id):
            updated = change(self._read(checkpoint_id))
            self._write(updated)
        return updated

    def delete(self, checkpoint_id: str) -> bool:
        """Remove data, summary, analytics, and index entry.

        Missing pieces are tolerated. Returns False when nothing existed.
        """
        try:
            self._check_id(checkpoint_id)
        except CheckpointNotFound:
            return False

        removed = False
        with self._locked(checkpoint_id):
            for path in (
                self._data_path(checkpoint_id),
                self._summary_path(checkpoint_id),
                self._analytics_path(checkpoint_id),
            ):
                try:
                    path.unlink()
                    removed = True
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Could not remove {path}: {e}")
            removed = self._index_remove(checkpoint_id) or removed

        with self._locks_guard:
            self._locks.pop(checkpoint_id, None)

        if removed:
            logger.info(f"Deleted checkpoint {checkpoint_id}")
        return removed

    def append_analytics_event(self, checkpoint_id: str, event: dict[str, Any]) -> None:
        self._check_id(checkpoint_id)
        with self._locked(checkpoint_id):
            path = self._analytics_path(checkpoint_id)
            events = read_json(path, default=[])
            if not isinstance(events, list):
                events = []
            events.append(event)
            result = atomic_write_json(path, events)
            if result.is_err():
                logger.warning(f"Could not record analytics for {checkpoint_id}: {result.unwrap_err().message}")

    # ========================================================================
    # Index
    # ========================================================================

    def load_index(self) -> dict[str, Any]:
        index = read_json(self.index_path)
        if not isinstance(index, dict) or "checkpoints" not in index:
            return _empty_index()
        index.setdefault("search_metadata", _empty_index()["search_metadata"])
        return index

    def _save_index(self, index: dict[str, Any]) -> None:
        index["last_updated"] = _now_iso()
        result = atomic_write_json(self.index_path, index)
        if result.is_err():
            raise OSError(f"Failed to save checkpoint index: {result.unwrap_err().message}")

    @staticmethod
    def _adjust(table: dict[str, int], keys: list[str], delta: int) -> None:
        for key in keys:
            count = table.get(key, 0) + delta
            if count > 0:
                table[key] = count
            else:
                table.pop(key, None)

    def _index_put(self, checkpoint: AgentCheckpoint) -> None:
        descriptor = {
            "title": checkpoint.title,
            "agent_type": checkpoint.agent_type,
            "tags": list(checkpoint.tags),
            "context_types": list(checkpoint.context_types),
            "expertise_areas": list(checkpoint.expertise_areas),
            "performance_score": checkpoint.performance_score,
            "usage_count": checkpoint.usage_count,
            "created_at": checkpoint.created_at,
            "last_used": checkpoint.last_used,
        }
        with self._index_lock:
            index = self.load_index()
            meta = index["search_metadata"]
            previous = index["checkpoints"].get(checkpoint.id)
            if previous:
                self._adjust(meta["tag_frequency"], previous.get("tags", []), -1)
                self._adjust(meta["context_type_frequency"], previous.get("context_types", []), -1)
            self._adjust(meta["tag_frequency"], descriptor["tags"], +1)
            self._adjust(meta["context_type_frequency"], descriptor["context_types"], +1)
            for area in descriptor["expertise_areas"]:
                if area not in meta["expertise_areas"]:
                    meta["expertise_areas"].append(area)
            index["checkpoints"][checkpoint.id] = descriptor
            self._save_index(index)

    def _index_remove(self, checkpoint_id: str) -> bool:
        with self._index_lock:
            index = self.load_index()
            previous = index["checkpoints"].pop(checkpoint_id, None)
            if previous is None:
                return False
            meta = index["search_metadata"]
            self._adjust(meta["tag_frequency"], previous.get("tags", []), -1)
            self._adjust(meta["context_type_frequency"], previous.get("context_types", []), -1)
            remaining = {a for d in index["checkpoints"].values() for a in d.get("expertise_areas", [])}
            meta["expertise_areas"] = [a for a in meta["expertise_areas"] if a in remaining]
            try:
                self._save_index(index)
            except OSError as e:
                logger.warning(f"Index entry for {checkpoint_id} not removed: {e}")
            return True

    # ========================================================================
    # Search
    # ========================================================================

    def load_summaries(self) -> list[CheckpointSummary]:
        if not self.summaries_dir.exists():
            return []
        summaries = []
        for path in sorted(self.summaries_dir.glob("*.json")):
            data = read_json(path)
            if not isinstance(data, dict):
                continue
            try:
                summaries.append(CheckpointSummary.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable summary {path.name}: {e}")
        return summaries

    def search(self, query: CheckpointSearchQuery) -> CheckpointSearchResult:
        """Filter, sort, and paginate checkpoint summaries.

        Text terms are ANDed; each must appear (case-insensitively) somewhere
        in title, description, tags, or expertise areas. List filters match
        when any value matches.
        """
        start = time.perf_counter()
        summaries = self.load_summaries()
        matches = summaries

        terms = query.query.lower().split()
        if terms:
            matches = [s for s in matches if all(t in _search_text(s) for t in terms)]

        f = query.filters
        if f.context_types:
            matches = [s for s in matches if set(f.context_types) & set(s.context_types)]
        if f.expertise_areas:
            matches = [s for s in matches if set(f.expertise_areas) & set(s.expertise_areas)]
        if f.tags:
            matches = [s for s in matches if set(f.tags) & set(s.tags)]
        if f.performance_threshold > 0:
            matches = [s for s in matches if s.performance_score >= f.performance_threshold]
        if f.recently_used:
            cutoff = datetime.now(UTC) - timedelta(days=RECENT_DAYS)
            matches = [s for s in matches if (used := _parse_ts(s.last_used)) is not None and used > cutoff]
        if f.created_by:
            matches = [s for s in matches if s.created_by == f.created_by]
        if f.created_after or f.created_before:
            after = _parse_ts(f.created_after)
            before = _parse_ts(f.created_before)
            matches = [s for s in matches if _in_range(_parse_ts(s.created_at), after, before)]

        sort_by = query.sort_by if query.sort_by in SORT_KEYS else "relevance"
        matches = sorted(matches, key=_sort_key(sort_by))

        total = len(matches)
        page = matches[query.offset : query.offset + query.limit]

        meta = self.load_index()["search_metadata"]
        tag_frequency = meta.get("tag_frequency", {})
        suggested = sorted(tag_frequency, key=lambda t: (-tag_frequency[t], t))[:SUGGESTION_LIMIT]
        expertise = Counter(a for s in summaries for a in s.expertise_areas)
        related = [a for a, _ in expertise.most_common(SUGGESTION_LIMIT)]

        return CheckpointSearchResult(
            results=page,
            total_count=total,
            suggested_tags=suggested,
            related_expertise=related,
            search_time_ms=(time.perf_counter() - start) * 1000,
        )

    def stats(self) -> StorageStats:
        sizes = []
        if self.data_dir.exists():
            for path in self.data_dir.glob("*.json"):
                try:
                    sizes.append(path.stat().st_size)
                except OSError:
                    continue
        summaries = self.load_summaries()
        tags = Counter(t for s in summaries for t in s.tags)
        expertise = Counter(a for s in summaries for a in s.expertise_areas)
        total = sum(sizes)
        return StorageStats(
            total_checkpoints=len(sizes),
            total_size_bytes=total,
            average_size_bytes=total / len(sizes) if sizes else 0.0,
            most_used_tags=[t for t, _ in tags.most_common(SUGGESTION_LIMIT)],
            most_common_expertise=[a for a, _ in expertise.most_common(SUGGESTION_LIMIT)],
        )


def _search_text(summary: CheckpointSummary) -> str:
    return " ".join([summary.title, summary.description, *summary.tags, *summary.expertise_areas]).lower()


def _in_range(value: datetime | None, after: datetime | None, before: datetime | None) -> bool:
    if value is None:
        return False
    if after is not None and value < after:
        return False
    if before is not None and value > before:
        return False
    return True


def _sort_key(sort_by: str) -> Callable[[CheckpointSummary], Any]:
    """Descending sort keys; ``sorted`` is stable so ties keep disk order."""
    epoch = datetime.min.replace(tzinfo=UTC)

    if sort_by == "usage":
        return lambda s: -s.usage_count
    if sort_by == "recent":
        return lambda s: -(_parse_ts(s.last_used or s.created_at) or epoch).timestamp()
    if sort_by == "created":
        return lambda s: -(_parse_ts(s.created_at) or epoch).timestamp()
    # relevance ranks like performance
    return lambda s: -s.performance_score
