"""Record and approval-workflow stores consumed by the pipeline.

The pipeline depends only on the ``RecordStore`` and ``WorkflowStore``
protocols. In-memory implementations back tests and the HTTP service; the
JSONL store reads ``<root>/<source_type>.jsonl`` files for CLI use.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Iterator, List, Protocol, Sequence

from pydantic import BaseModel

from .models import SOURCE_TYPES, parse_source_record

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def fetch(
        self,
        source_type: str,
        ids: Sequence[str] | None = None,
        filters: Dict[str, Any] | None = None,
    ) -> list: ...

    def persist(self, entity: Any) -> str: ...


class WorkflowStore(Protocol):
    def create_workflow(
        self,
        content_id: str,
        steps: List[Dict[str, Any]],
        reviewers: List[str],
    ) -> str: ...


# --- Filtering ------------------------------------------------------------

def _matches_filters(record: BaseModel, filters: Dict[str, Any]) -> bool:
    """Equality filters on record fields; list values mean "any of"."""
    for key, expected in filters.items():
        if key == "limit":
            continue
        actual = getattr(record, key, None)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _select(
    records: Iterable[BaseModel],
    ids: Sequence[str] | None,
    filters: Dict[str, Any] | None,
) -> list:
    filters = filters or {}
    wanted = set(ids or [])
    selected = [
        record
        for record in records
        if (not wanted or record.id in wanted) and _matches_filters(record, filters)
    ]
    limit = filters.get("limit")
    if isinstance(limit, int) and limit >= 0:
        selected = selected[:limit]
    return selected


def _source_type_or_raise(source_type: str) -> str:
    if source_type not in SOURCE_TYPES:
        raise KeyError(f"Unknown source type: {source_type}")
    return source_type


# --- In-memory stores -----------------------------------------------------

class InMemoryRecordStore:
    """Record store holding parsed source records per type."""

    def __init__(self, records: Iterable[Any] = ()):
        self._records: Dict[str, List[BaseModel]] = {name: [] for name in SOURCE_TYPES}
        self._persisted: Dict[str, Any] = {}
        self._lock = Lock()
        for record in records:
            self.add(record)

    def add(self, record: Any) -> BaseModel:
        parsed = record if isinstance(record, BaseModel) else parse_source_record(record)
        with self._lock:
            self._records[parsed.source_type].append(parsed)
        return parsed

    def fetch(self, source_type, ids=None, filters=None) -> list:
        _source_type_or_raise(source_type)
        with self._lock:
            records = list(self._records[source_type])
        return _select(records, ids, filters)

    def persist(self, entity: Any) -> str:
        entity_id = getattr(entity, "id", None) or uuid.uuid4().hex
        with self._lock:
            self._persisted[entity_id] = entity
        return entity_id

    def get_persisted(self, entity_id: str) -> Any:
        with self._lock:
            return self._persisted.get(entity_id)


class InMemoryWorkflowStore:
    """Approval workflow store that keeps workflows in a dict."""

    def __init__(self) -> None:
        self.workflows: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def create_workflow(self, content_id, steps, reviewers) -> str:
        workflow_id = f"wf_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.workflows[workflow_id] = {
                "workflow_id": workflow_id,
                "content_id": content_id,
                "steps": [dict(step) for step in steps],
                "reviewers": list(reviewers),
                "status": "pending",
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        return workflow_id


# --- JSONL store ----------------------------------------------------------

class _PathLocks:
    """Process-local lock per resolved file path."""

    def __init__(self) -> None:
        self._locks: Dict[str, Lock] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        key = str(path.resolve())
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
        with lock:
            yield


_PATH_LOCKS = _PathLocks()


def locked_path(path: Path):
    """Serialize readers and writers of a single path within this process."""
    return _PATH_LOCKS.hold(path)


def _to_json_dict(entity: Any) -> Dict[str, Any]:
    if isinstance(entity, BaseModel):
        return entity.model_dump(mode="json")
    if dataclasses.is_dataclass(entity) and not isinstance(entity, type):
        return dataclasses.asdict(entity)
    if isinstance(entity, dict):
        return dict(entity)
    raise TypeError(f"Cannot persist {type(entity).__name__}; expected a model or dict.")


class JsonlRecordStore:
    """
    Record store backed by ``<root>/<source_type>.jsonl`` files.

    ``persist`` writes source records to their type file and anything else to
    ``<root>/entities.jsonl``. Malformed lines are skipped with a warning.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser().resolve()

    def _path_for(self, name: str) -> Path:
        return self.root / f"{name}.jsonl"

    def _read_lines(self, path: Path) -> Iterator[Dict[str, Any]]:
        if not path.exists():
            return
        with locked_path(path):
            lines = path.read_text(encoding="utf-8").splitlines()
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed JSON on %s:%d", path, number)

    def fetch(self, source_type, ids=None, filters=None) -> list:
        _source_type_or_raise(source_type)
        records = []
        for raw in self._read_lines(self._path_for(source_type)):
            raw.setdefault("source_type", source_type)
            records.append(parse_source_record(raw))
        return _select(records, ids, filters)

    def persist(self, entity: Any) -> str:
        payload = _to_json_dict(entity)
        payload.setdefault("id", uuid.uuid4().hex)
        source_type = payload.get("source_type")
        name = source_type if source_type in SOURCE_TYPES else "entities"
        path = self._path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with locked_path(path):
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False, default=str))
                f.write("\n")
        return str(payload["id"])

    def load_entities(self) -> List[Dict[str, Any]]:
        return list(self._read_lines(self._path_for("entities")))


def load_records_file(path: Path | str) -> List[BaseModel]:
    """Parse a JSON array of source records (each with ``source_type``)."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = [data]
    return [parse_source_record(item) for item in data]
