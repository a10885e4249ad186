"""Table storage contract and the chunked record codec shared by all backends.

A stored record looks like::

    {
        "partitionKey": "...", "rowKey": "...",
        "isProto": False, "dataChunks": N,
        "dataChunk_0": b"...", ..., "dataChunk_<N-1>": b"...",
        "extra_<name>": "string" | 123,
    }

The payload is the UTF-8 JSON encoding of the stored object, split into
slices of at most ``CHUNK_SIZE`` bytes. Objects needing more than
``MAX_CHUNKS_COUNT`` slices are rejected before anything is persisted.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .errors import StorageCapacityError

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
CHUNK_SIZE = 64000
MAX_CHUNKS_COUNT = 15

PARTITION_KEY = "partitionKey"
ROW_KEY = "rowKey"
IS_PROTO = "isProto"
DATA_CHUNKS = "dataChunks"
DATA_CHUNK_PREFIX = "dataChunk_"
EXTRA_PREFIX = "extra_"

NUMERIC_OPERATORS = ("eq", "ge", "gt", "le", "lt")

_NUMBER_FILTER = re.compile(r"^\s*extra_(\w+)\s+(\w+)\s+(-?[0-9]+)L\s*$", re.IGNORECASE)
_STRING_FILTER = re.compile(r"^\s*extra_(\w+)\s+eq\s+'([^']*)'\s*$", re.IGNORECASE)

Entity = Dict[str, Any]


class TableStore(Protocol):
    """Capabilities every storage backend provides.

    Objects are JSON-compatible dicts carrying an ``id`` which becomes the
    row key. Reads never raise for missing or corrupt records, they skip them.
    """

    def get(self, key: str, partition: str) -> Optional[Entity]:
        ...

    def get_all(self, top: Optional[int] = None, skip: Optional[int] = None) -> List[Entity]:
        ...

    def query(
        self,
        filter: str,
        partition: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Entity]:
        ...

    def write(self, data: Entity, partition: str, extra_fields: Optional[Sequence[str]] = None) -> None:
        ...

    def write_batch(
        self, data: Sequence[Entity], partition: str, extra_fields: Optional[Sequence[str]] = None
    ) -> None:
        ...

    def delete(self, key: str, partition: str) -> None:
        ...

    def delete_batch(self, keys: Sequence[str], partition: str) -> None:
        ...


def chunk_key(index: int) -> str:
    return f"{DATA_CHUNK_PREFIX}{index}"


def extra_key(name: str) -> str:
    return f"{EXTRA_PREFIX}{name}"


def _extra_value(value: Any) -> Any:
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return value
    return json.dumps(value, ensure_ascii=False)


def encode_record(
    data: Entity, partition: str, extra_fields: Optional[Sequence[str]] = None
) -> Entity:
    """Serialise ``data`` into a chunked record.

    Raises ``ValueError`` for malformed input and ``StorageCapacityError``
    when the payload would need more than ``MAX_CHUNKS_COUNT`` chunks.
    """
    if not data:
        raise ValueError("encode_record: undefined or empty data.")
    key = data.get("id")
    if not key or not isinstance(key, str):
        raise ValueError("encode_record: data has no string 'id'.")

    serialized = json.dumps(data, ensure_ascii=False).encode("utf-8")
    total_chunks = (len(serialized) + CHUNK_SIZE - 1) // CHUNK_SIZE
    if total_chunks > MAX_CHUNKS_COUNT:
        raise StorageCapacityError(
            f"entity data too large, chunks: {total_chunks} size: {len(serialized)}"
        )

    record: Entity = {
        PARTITION_KEY: partition,
        ROW_KEY: key,
        IS_PROTO: False,
        DATA_CHUNKS: total_chunks,
    }
    for index in range(total_chunks):
        record[chunk_key(index)] = serialized[index * CHUNK_SIZE : (index + 1) * CHUNK_SIZE]

    for name in extra_fields or ():
        value = data.get(name)
        # numeric zero stays filterable
        if value or (isinstance(value, (int, float)) and not isinstance(value, bool)):
            record[extra_key(name)] = _extra_value(value)

    return record


def decode_record(record: Entity) -> Optional[Entity]:
    """Rebuild the stored object from a chunked record.

    Returns ``None`` (and logs) for any structural or decoding problem.
    """
    partition = record.get(PARTITION_KEY)
    key = record.get(ROW_KEY)
    is_proto = record.get(IS_PROTO)
    chunks_count = record.get(DATA_CHUNKS)
    if (
        is_proto is None
        or chunks_count is None
        or isinstance(chunks_count, bool)
        or not isinstance(chunks_count, int)
    ):
        logger.error(
            "Format error, data chunks or isProto keys not found: Partition: %s, Key: %s",
            partition,
            key,
        )
        return None

    if is_proto:
        logger.error("Protocol buffer records are not supported: Partition: %s, Key: %s", partition, key)
        return None

    chunks: List[bytes] = []
    for index in range(chunks_count):
        chunk = record.get(chunk_key(index))
        if not isinstance(chunk, (bytes, bytearray)) or not chunk:
            logger.error(
                "Format error, data chunk %d not found: Partition: %s, Key: %s", index, partition, key
            )
            return None
        chunks.append(bytes(chunk))

    try:
        payload = json.loads(b"".join(chunks).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        logger.error("Deserialization failed: Partition: %s, Key: %s: %s", partition, key, exc)
        return None

    if not isinstance(payload, dict):
        logger.error("Deserialization produced a non-object: Partition: %s, Key: %s", partition, key)
        return None
    return payload


@dataclass(frozen=True)
class ExtraFilter:
    """Parsed form of ``extra_<field> <op> <literal>``."""

    field: str
    op: str
    value: Any

    @property
    def column(self) -> str:
        return extra_key(self.field)

    def matches(self, candidate: Any) -> bool:
        if isinstance(self.value, str):
            return isinstance(candidate, str) and candidate == self.value
        if isinstance(candidate, bool) or not isinstance(candidate, (int, float)):
            return False
        return {
            "eq": candidate == self.value,
            "ge": candidate >= self.value,
            "gt": candidate > self.value,
            "le": candidate <= self.value,
            "lt": candidate < self.value,
        }[self.op]


def parse_filter(filter: str) -> Optional[ExtraFilter]:
    """Parse the two supported filter shapes; anything else yields ``None``."""
    number_match = _NUMBER_FILTER.match(filter or "")
    if number_match:
        name, op, value = number_match.groups()
        op = op.lower()
        if op not in NUMERIC_OPERATORS:
            return None
        return ExtraFilter(field=name, op=op, value=int(value))

    string_match = _STRING_FILTER.match(filter or "")
    if string_match:
        name, value = string_match.groups()
        return ExtraFilter(field=name, op="eq", value=value)

    return None


def paginate(values: List[Any], top: Optional[int] = None, skip: Optional[int] = None) -> List[Any]:
    """Apply ``skip`` then ``top``; a falsy ``top`` means no limit."""
    start = skip or 0
    return values[start : start + top] if top else values[start:]


def batched(values: Sequence[Any], size: int = BATCH_SIZE) -> List[Sequence[Any]]:
    return [values[start : start + size] for start in range(0, len(values), size)]


class InitGuard:
    """Run an initialisation step once, sharing the outcome with concurrent callers.

    The first caller performs the work. Callers arriving while it runs wait
    for the same attempt and see its result or exception. A failed attempt
    leaves the guard uninitialised so the next call retries.
    """

    def __init__(self, init: Callable[[], None]):
        self._init = init
        self._lock = threading.Lock()
        self._done = False
        self._pending: Optional[Future] = None

    @property
    def done(self) -> bool:
        return self._done

    def ensure(self) -> None:
        if self._done:
            return

        with self._lock:
            if self._done:
                return
            owner = self._pending is None
            if owner:
                self._pending = Future()
            pending = self._pending

        if not owner:
            pending.result()
            return

        try:
            self._init()
        except BaseException as exc:
            with self._lock:
                self._pending = None
            pending.set_exception(exc)
            raise

        with self._lock:
            self._done = True
            self._pending = None
        pending.set_result(None)
