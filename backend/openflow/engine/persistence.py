"""Persistence adapter for flow definitions and instance snapshots."""
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from logging import getLogger
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import PersistenceUnavailable, RecordNotFound
from .graph import Graph
from .instance import Instance
from ..models.schemas import (
    FlowDefinition, InstanceSchema, graph_to_schema, instance_to_schema,
    schema_to_graph, schema_to_instance,
)

logger = getLogger(__name__)


class PersistenceAdapter(ABC):
    @abstractmethod
    def load_definition(self, graph_id: str) -> Graph:
        ...

    @abstractmethod
    def save_definition(self, graph: Graph) -> int:
        """Store a definition and return its stored revision."""
        ...

    @abstractmethod
    def load_instance(self, instance_id: str) -> Instance:
        ...

    @abstractmethod
    def save_instance_snapshot(self, instance: Instance) -> None:
        ...

    def list_definitions(self) -> list[dict[str, Any]]:
        return []


class JsonFilePersistence(PersistenceAdapter):
    """One JSON file per record, in the same layout the editor saves graphs."""

    def __init__(self, definitions_dir: Path, instances_dir: Path):
        self.definitions_dir = Path(definitions_dir)
        self.instances_dir = Path(instances_dir)

    def _definition_path(self, graph_id: str) -> Path:
        return _record_path(self.definitions_dir, graph_id)

    def _instance_path(self, instance_id: str) -> Path:
        return _record_path(self.instances_dir, instance_id)

    def load_definition(self, graph_id: str) -> Graph:
        record = self._read(self._definition_path(graph_id), "flow", graph_id)
        try:
            definition = FlowDefinition.model_validate(record)
        except ValidationError as exc:
            raise PersistenceUnavailable(f"Flow {graph_id} is corrupt: {exc}") from exc
        return schema_to_graph(definition.graph)

    def save_definition(self, graph: Graph) -> int:
        if not graph.id:
            graph.id = str(uuid.uuid4())
        path = self._definition_path(graph.id)
        revision = 1
        if path.exists():
            revision = self._read(path, "flow", graph.id).get("revision", 0) + 1
        definition = FlowDefinition(
            graph=graph_to_schema(graph),
            revision=revision,
            saved_at=datetime.now(timezone.utc),
        )
        self._write(path, definition.model_dump_json(indent=2))
        logger.info("saved flow %s revision %d", graph.id, revision)
        return revision

    def load_instance(self, instance_id: str) -> Instance:
        record = self._read(self._instance_path(instance_id), "instance", instance_id)
        try:
            return schema_to_instance(InstanceSchema.model_validate(record))
        except ValidationError as exc:
            raise PersistenceUnavailable(f"Instance {instance_id} is corrupt: {exc}") from exc

    def save_instance_snapshot(self, instance: Instance) -> None:
        path = self._instance_path(instance.id)
        self._write(path, instance_to_schema(instance).model_dump_json(indent=2))
        logger.info("saved snapshot of instance %s (%s)", instance.id, instance.status.value)

    def list_definitions(self) -> list[dict[str, Any]]:
        flows = []
        if not self.definitions_dir.exists():
            return flows
        for path in sorted(self.definitions_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text())
                graph = data.get("graph", {})
                flows.append({
                    "id": graph.get("id", path.stem),
                    "name": graph.get("name", ""),
                    "kind": graph.get("kind", "flow"),
                    "revision": data.get("revision", 0),
                    "saved_at": data.get("saved_at"),
                })
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("skipping unreadable flow file %s: %s", path, exc)
        return flows

    def _read(self, path: Path, kind: str, record_id: str) -> dict[str, Any]:
        if not path.exists():
            raise RecordNotFound(kind, record_id)
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceUnavailable(f"Cannot read {path}: {exc}") from exc

    def _write(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text)
        except OSError as exc:
            raise PersistenceUnavailable(f"Cannot write {path}: {exc}") from exc


def _record_path(directory: Path, record_id: str) -> Path:
    """Map a record id to its file; the file must sit directly in ``directory``."""
    root = directory.resolve()
    path = (root / f"{record_id}.json").resolve()
    if path.parent != root:
        raise PersistenceUnavailable(f"Invalid record id {record_id!r}")
    return path
