# File: match_store.py

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from match_record import MatchRecord, UserStats
from models import MatchStatus

LOGGER = logging.getLogger("match_store")


class MatchStore(Protocol):
    async def get(self, match_id: str) -> MatchRecord | None: ...

    async def save(self, record: MatchRecord) -> None: ...

    async def delete(self, match_id: str) -> None: ...

    async def find_by_join_code(self, join_code: str) -> MatchRecord | None: ...

    async def list_for_user(self, user_id: str) -> list[MatchRecord]: ...


class StatsStore(Protocol):
    async def get(self, user_id: str) -> UserStats | None: ...

    async def save(self, stats: UserStats) -> None: ...


def _pick_by_code(records: list[MatchRecord], join_code: str) -> MatchRecord | None:
    # A WAITING match owns its code; finished matches may reuse one.
    matches = [record for record in records if record.join_code == join_code]
    if not matches:
        return None
    matches.sort(key=lambda record: (record.status == MatchStatus.WAITING, record.created_at), reverse=True)
    return matches[0]


class MemoryMatchStore:
    """
    Process-local store. Records are copied in and out so callers never
    share mutable state with the stored document.
    """

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def get(self, match_id: str) -> MatchRecord | None:
        document = self._documents.get(match_id)
        if document is None:
            return None
        return MatchRecord.from_dict(json.loads(json.dumps(document)))

    async def save(self, record: MatchRecord) -> None:
        self._documents[record.match_id] = json.loads(json.dumps(record.to_dict()))

    async def delete(self, match_id: str) -> None:
        self._documents.pop(match_id, None)

    async def find_by_join_code(self, join_code: str) -> MatchRecord | None:
        records = [MatchRecord.from_dict(doc) for doc in self._documents.values() if doc.get("joinCode") == join_code]
        return _pick_by_code(records, join_code)

    async def list_for_user(self, user_id: str) -> list[MatchRecord]:
        records: list[MatchRecord] = []
        for document in self._documents.values():
            record = MatchRecord.from_dict(document)
            if record.is_participant(user_id):
                records.append(record)
        return records


class MemoryStatsStore:
    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def get(self, user_id: str) -> UserStats | None:
        document = self._documents.get(user_id)
        if document is None:
            return None
        return UserStats.from_dict(dict(document))

    async def save(self, stats: UserStats) -> None:
        self._documents[stats.user_id] = stats.to_dict()


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, separators=(",", ":"))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        _unlink_quietly(tmp_name)
        raise


def _unlink_quietly(name: str) -> None:
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        return None
    if not isinstance(payload, dict):
        raise ValueError(f"{path} does not hold a JSON object")
    return payload


class JsonFileMatchStore:
    """One JSON document per match under `<root>/matches`, replaced atomically."""

    def __init__(self, root: str | Path) -> None:
        self._dir = Path(root) / "matches"

    def _path(self, match_id: str) -> Path:
        if not match_id or "/" in match_id or match_id.startswith("."):
            raise ValueError(f"invalid match id {match_id!r}")
        return self._dir / f"{match_id}.json"

    async def get(self, match_id: str) -> MatchRecord | None:
        try:
            path = self._path(match_id)
        except ValueError:
            return None
        document = await asyncio.to_thread(_read_json, path)
        return None if document is None else MatchRecord.from_dict(document)

    async def save(self, record: MatchRecord) -> None:
        await asyncio.to_thread(_write_json_atomic, self._path(record.match_id), record.to_dict())
        LOGGER.debug("saved match %s v%s", record.match_id, record.version)

    async def delete(self, match_id: str) -> None:
        await asyncio.to_thread(self._unlink, self._path(match_id))

    async def find_by_join_code(self, join_code: str) -> MatchRecord | None:
        records = await asyncio.to_thread(self._load_all)
        return _pick_by_code(records, join_code)

    async def list_for_user(self, user_id: str) -> list[MatchRecord]:
        records = await asyncio.to_thread(self._load_all)
        return [record for record in records if record.is_participant(user_id)]

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def _load_all(self) -> list[MatchRecord]:
        if not self._dir.exists():
            return []
        records: list[MatchRecord] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                document = _read_json(path)
            except (OSError, ValueError):
                LOGGER.exception("skipping unreadable match document %s", path)
                continue
            if document is not None:
                records.append(MatchRecord.from_dict(document))
        return records


class JsonFileStatsStore:
    def __init__(self, root: str | Path) -> None:
        self._dir = Path(root) / "users"

    def _path(self, user_id: str) -> Path:
        # User ids are client-chosen; hashing keeps distinct ids in distinct files.
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
        return self._dir / f"{digest}.json"

    async def get(self, user_id: str) -> UserStats | None:
        document = await asyncio.to_thread(_read_json, self._path(user_id))
        return None if document is None else UserStats.from_dict(document)

    async def save(self, stats: UserStats) -> None:
        await asyncio.to_thread(_write_json_atomic, self._path(stats.user_id), stats.to_dict())
