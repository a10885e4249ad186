"""Local table storage kept in a single JSON document.

The whole store is rewritten on every mutation: the document goes to a
temporary file first and is then renamed over the real path, so readers
never observe a half-written file. Not safe for several processes sharing
one file.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import FormatError
from .models import now_ms
from .tables import (
    DATA_CHUNK_PREFIX,
    Entity,
    InitGuard,
    decode_record,
    encode_record,
    paginate,
    parse_filter,
)

logger = logging.getLogger(__name__)

STORE_VERSION = 1


def _empty_store() -> Dict[str, Any]:
    return {"version": STORE_VERSION, "lastModified": now_ms(), "entities": {}}


def _pack(record: Entity) -> Entity:
    """Make a chunked record JSON-safe by base64-encoding its chunks."""
    packed = {}
    for key, value in record.items():
        if key.startswith(DATA_CHUNK_PREFIX) and isinstance(value, (bytes, bytearray)):
            value = base64.b64encode(value).decode("ascii")
        packed[key] = value
    return packed


def _unpack(data: Any) -> Entity:
    if not isinstance(data, dict):
        return {}
    record = dict(data)
    for key, value in data.items():
        if key.startswith(DATA_CHUNK_PREFIX) and isinstance(value, str):
            try:
                record[key] = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                record[key] = None
    return record


class FileTableStore:
    """Table storage backed by one JSON file on the local disk."""

    def __init__(self, data_file_path: Union[str, Path]):
        self.data_file_path = Path(os.path.normpath(str(data_file_path)))
        self._data_store = _empty_store()
        self._lock = threading.RLock()
        self._writing = threading.Lock()
        self._loaded = InitGuard(self._load_from_disk)

    @property
    def _entities(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return self._data_store["entities"]

    def get(self, key: str, partition: str) -> Optional[Entity]:
        self._loaded.ensure()
        with self._lock:
            entity = self._entities.get(partition, {}).get(key)
        if not entity:
            return None
        return decode_record(_unpack(entity.get("data")))

    def get_all(self, top: Optional[int] = None, skip: Optional[int] = None) -> List[Entity]:
        self._loaded.ensure()
        with self._lock:
            entities = [
                entity for partition_data in self._entities.values() for entity in partition_data.values()
            ]
        return paginate(self._decode_newest_first(entities), top, skip)

    def query(
        self,
        filter: str,
        partition: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Entity]:
        self._loaded.ensure()
        with self._lock:
            if partition:
                entities = list(self._entities.get(partition, {}).values())
            else:
                entities = [
                    entity
                    for partition_data in self._entities.values()
                    for entity in partition_data.values()
                ]

        if filter and filter.strip():
            parsed = parse_filter(filter)
            if parsed is None:
                # only the two extra_ filter shapes are understood here
                logger.warning("Unsupported filter for file storage: %s", filter)
                return []
            entities = [
                entity
                for entity in entities
                if parsed.matches(_unpack(entity.get("data")).get(parsed.column))
            ]

        return paginate(self._decode_newest_first(entities), top, skip)

    def _decode_newest_first(self, entities: List[Dict[str, Any]]) -> List[Entity]:
        entities = sorted(entities, key=lambda entity: entity.get("timestamp", 0), reverse=True)
        objects = []
        for entity in entities:
            obj = decode_record(_unpack(entity.get("data")))
            if obj is not None:
                objects.append(obj)
        return objects

    def write(self, data: Entity, partition: str, extra_fields: Optional[Sequence[str]] = None) -> None:
        self.write_batch([data], partition, extra_fields)

    def write_batch(
        self, data: Sequence[Entity], partition: str, extra_fields: Optional[Sequence[str]] = None
    ) -> None:
        self._loaded.ensure()
        if not data:
            return

        records = [encode_record(item, partition, extra_fields) for item in data]
        with self._lock:
            partition_data = self._entities.setdefault(partition, {})
            for item, record in zip(data, records):
                partition_data[item["id"]] = {
                    "id": item["id"],
                    "partition": partition,
                    "data": _pack(record),
                    "timestamp": now_ms(),
                    "dirty": True,
                }
        self._write_to_disk()

    def delete(self, key: str, partition: str) -> None:
        self.delete_batch([key], partition)

    def delete_batch(self, keys: Sequence[str], partition: str) -> None:
        self._loaded.ensure()
        if not keys:
            return

        with self._lock:
            partition_data = self._entities.get(partition)
            if partition_data is None:
                logger.debug("Partition %s not found", partition)
                return

            deleted = 0
            for key in keys:
                if partition_data.pop(key, None) is not None:
                    deleted += 1
            if not partition_data:
                del self._entities[partition]

        if deleted:
            self._write_to_disk()
            logger.debug("Successfully removed %d objects from partition %s", deleted, partition)

    def get_stats(self) -> Dict[str, int]:
        """Return entity, dirty entity and partition counts."""
        with self._lock:
            entities = [
                entity for partition_data in self._entities.values() for entity in partition_data.values()
            ]
            return {
                "total_entities": len(entities),
                "dirty_entities": sum(1 for entity in entities if entity.get("dirty")),
                "partitions": len(self._entities),
            }

    def _load_from_disk(self) -> None:
        try:
            content = self.data_file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Data file %s does not exist, starting with empty store", self.data_file_path)
            with self._lock:
                self._data_store = _empty_store()
            return

        try:
            store = json.loads(content)
        except ValueError as exc:
            raise FormatError(f"Data file {self.data_file_path} is not valid JSON") from exc
        if not isinstance(store, dict) or not isinstance(store.get("entities"), dict):
            raise FormatError(f"Data file {self.data_file_path} has no entities map")

        for partition_data in store["entities"].values():
            for entity in partition_data.values():
                entity["dirty"] = False

        with self._lock:
            self._data_store = store
        logger.debug("Loaded %d entities from %s", self.get_stats()["total_entities"], self.data_file_path)

    def _write_to_disk(self) -> None:
        if not self._writing.acquire(blocking=False):
            # a write is already in flight; this call is dropped, not queued
            return

        try:
            with self._lock:
                self._data_store["lastModified"] = now_ms()
                total = 0
                for partition_data in self._entities.values():
                    for entity in partition_data.values():
                        entity["dirty"] = False
                        total += 1
                document = json.dumps(self._data_store, indent=2, ensure_ascii=False)

            self.data_file_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.data_file_path.with_name(self.data_file_path.name + ".tmp")
            temp_path.write_text(document, encoding="utf-8")
            os.replace(temp_path, self.data_file_path)
            logger.debug("Successfully wrote %d entities to %s", total, self.data_file_path)
        except OSError:
            logger.exception("Failed to write data to %s", self.data_file_path)
            raise
        finally:
            self._writing.release()
