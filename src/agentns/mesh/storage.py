"""Registry persistence — the key-value contract the registry is written against.

Two backends ship with AgentNS:

    InMemoryStore   — process-local dict (default, tests, demos)
    JsonFileStore   — single JSON document on disk, rewritten on each write

Anything else (Redis, SQL, etcd) only has to satisfy :class:`KeyValueStore`.
"""

from __future__ import annotations

import json
import os
import threading
from typing import Callable, Iterator, Protocol, runtime_checkable

from agentns.mesh.protocol import AgentRecord


@runtime_checkable
class KeyValueStore(Protocol):
    def put(self, agent_id: str, record: AgentRecord) -> None: ...

    def get(self, agent_id: str) -> AgentRecord | None: ...

    def delete(self, agent_id: str) -> bool: ...

    def scan(self, predicate: Callable[[AgentRecord], bool]) -> Iterator[AgentRecord]: ...


class InMemoryStore:
    """Insertion-ordered, thread-safe in-memory store."""

    def __init__(self) -> None:
        self._rows: dict[str, AgentRecord] = {}
        self._lock = threading.Lock()

    def put(self, agent_id: str, record: AgentRecord) -> None:
        with self._lock:
            self._rows[agent_id] = record

    def get(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._rows.get(agent_id)

    def delete(self, agent_id: str) -> bool:
        with self._lock:
            return self._rows.pop(agent_id, None) is not None

    def scan(self, predicate: Callable[[AgentRecord], bool]) -> Iterator[AgentRecord]:
        with self._lock:
            snapshot = list(self._rows.values())
        return (r for r in snapshot if predicate(r))

    def __len__(self) -> int:
        return len(self._rows)


class JsonFileStore(InMemoryStore):
    """In-memory rows mirrored to ``<path>`` after every mutation."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            raw = json.load(f)
        for item in raw:
            record = AgentRecord.model_validate(item)
            self._rows[record.agent_id] = record

    def _save(self) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w") as f:
            json.dump([r.model_dump() for r in self._rows.values()], f, indent=2)
        os.replace(tmp, self.path)

    def put(self, agent_id: str, record: AgentRecord) -> None:
        with self._lock:
            previous = self._rows.get(agent_id)
            self._rows[agent_id] = record
            try:
                self._save()
            except OSError:
                # keep memory and disk in agreement
                if previous is None:
                    self._rows.pop(agent_id, None)
                else:
                    self._rows[agent_id] = previous
                raise

    def delete(self, agent_id: str) -> bool:
        with self._lock:
            previous = self._rows.pop(agent_id, None)
            if previous is None:
                return False
            try:
                self._save()
            except OSError:
                self._rows[agent_id] = previous
                raise
            return True
