"""Remote table storage backed by a SQL database through SQLAlchemy."""

from __future__ import annotations

import logging
import operator
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    LargeBinary,
    String,
    Table,
    Text,
    create_engine,
    delete,
    exists,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .errors import FormatError
from .tables import (
    DATA_CHUNKS,
    EXTRA_PREFIX,
    IS_PROTO,
    MAX_CHUNKS_COUNT,
    PARTITION_KEY,
    ROW_KEY,
    Entity,
    ExtraFilter,
    InitGuard,
    batched,
    chunk_key,
    decode_record,
    encode_record,
    paginate,
    parse_filter,
)

logger = logging.getLogger(__name__)

_OPERATORS = {
    "eq": operator.eq,
    "ge": operator.ge,
    "gt": operator.gt,
    "le": operator.le,
    "lt": operator.lt,
}


class Base(DeclarativeBase):
    pass


class RecordModel(Base):
    """One chunked entity; chunk columns mirror the record wire shape."""

    __table__ = Table(
        "records",
        Base.metadata,
        Column("tableName", String(64), key="table_name", primary_key=True),
        Column(PARTITION_KEY, String(255), key="partition_key", primary_key=True),
        Column(ROW_KEY, String(255), key="row_key", primary_key=True),
        Column(IS_PROTO, Boolean, key="is_proto", nullable=False, default=False),
        Column(DATA_CHUNKS, Integer, key="data_chunks", nullable=False),
        *[Column(chunk_key(index), LargeBinary, nullable=True) for index in range(MAX_CHUNKS_COUNT)],
    )


class ExtraModel(Base):
    """Filterable ``extra_<name>`` value of a record."""

    __tablename__ = "record_extras"

    table_name = Column("tableName", String(64), primary_key=True)
    partition_key = Column(PARTITION_KEY, String(255), primary_key=True)
    row_key = Column(ROW_KEY, String(255), primary_key=True)
    name = Column(String(255), primary_key=True)
    text_value = Column("textValue", Text, nullable=True)
    number_value = Column("numberValue", BigInteger, nullable=True)


def init_engine(connection_string: Optional[str]) -> Optional[Engine]:
    """Initialize the database engine."""
    if not connection_string:
        return None

    logger.info("Initializing remote table storage engine")
    return create_engine(connection_string)


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine)


def _record_to_row(table_name: str, record: Entity) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "table_name": table_name,
        "partition_key": record[PARTITION_KEY],
        "row_key": record[ROW_KEY],
        "is_proto": record[IS_PROTO],
        "data_chunks": record[DATA_CHUNKS],
    }
    for index in range(MAX_CHUNKS_COUNT):
        row[chunk_key(index)] = record.get(chunk_key(index))
    return row


def _row_to_record(row: RecordModel) -> Entity:
    record: Entity = {
        PARTITION_KEY: row.partition_key,
        ROW_KEY: row.row_key,
        IS_PROTO: row.is_proto,
        DATA_CHUNKS: row.data_chunks,
    }
    for index in range(MAX_CHUNKS_COUNT):
        chunk = getattr(row, chunk_key(index))
        if chunk is not None:
            # some drivers hand back memoryview for binary columns
            record[chunk_key(index)] = bytes(chunk)
    return record


def _record_extras(table_name: str, record: Entity) -> List[ExtraModel]:
    extras = []
    for key, value in record.items():
        if not key.startswith(EXTRA_PREFIX):
            continue
        extra = ExtraModel(
            table_name=table_name,
            partition_key=record[PARTITION_KEY],
            row_key=record[ROW_KEY],
            name=key[len(EXTRA_PREFIX) :],
        )
        if isinstance(value, int) and not isinstance(value, bool):
            extra.number_value = value
        else:
            extra.text_value = str(value)
        extras.append(extra)
    return extras


class SqlTableStore:
    """Table storage on a remote SQL database.

    Writes and deletes are grouped in batches of at most ``BATCH_SIZE``
    entities, each batch committed as a single transaction.
    """

    def __init__(self, engine: Engine, table_name: str):
        self.table_name = table_name
        self._engine = engine
        self._session_factory = get_session_factory(engine)
        self._tables = InitGuard(self._create_tables)

    @classmethod
    def from_connection_string(cls, connection_string: str, table_name: str) -> "SqlTableStore":
        engine = init_engine(connection_string)
        if engine is None:
            raise ValueError("A connection string is required for remote table storage.")
        return cls(engine, table_name)

    def _create_tables(self) -> None:
        logger.debug("Ensuring storage tables exist for '%s'", self.table_name)
        Base.metadata.create_all(self._engine)

    def get(self, key: str, partition: str) -> Optional[Entity]:
        self._tables.ensure()
        with self._session_factory() as session:
            row = session.get(RecordModel, (self.table_name, partition, key))
            if row is None:
                return None
            return decode_record(_row_to_record(row))

    def get_all(self, top: Optional[int] = None, skip: Optional[int] = None) -> List[Entity]:
        self._tables.ensure()
        wanted = (skip or 0) + (top or 0)
        objects: List[Entity] = []
        stmt = (
            select(RecordModel)
            .where(RecordModel.table_name == self.table_name)
            .order_by(RecordModel.partition_key, RecordModel.row_key)
        )
        with self._session_factory() as session:
            for row in session.execute(stmt).scalars():
                obj = decode_record(_row_to_record(row))
                if obj is not None:
                    objects.append(obj)
                if top and len(objects) >= wanted:
                    break
        return paginate(objects, top, skip)

    def query(
        self,
        filter: str,
        partition: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Entity]:
        self._tables.ensure()
        stmt = select(RecordModel).where(RecordModel.table_name == self.table_name)
        if partition:
            stmt = stmt.where(RecordModel.partition_key == partition)
        if filter and filter.strip():
            parsed = parse_filter(filter)
            if parsed is None:
                raise FormatError(f"Unsupported filter expression: {filter}")
            stmt = stmt.where(self._extra_clause(parsed))
        stmt = stmt.order_by(RecordModel.partition_key, RecordModel.row_key)

        objects: List[Entity] = []
        with self._session_factory() as session:
            for row in session.execute(stmt).scalars():
                obj = decode_record(_row_to_record(row))
                if obj is not None:
                    objects.append(obj)
        return paginate(objects, top, skip)

    def _extra_clause(self, parsed: ExtraFilter):
        if isinstance(parsed.value, str):
            predicate = ExtraModel.text_value == parsed.value
        else:
            predicate = _OPERATORS[parsed.op](ExtraModel.number_value, parsed.value)
        return exists().where(
            ExtraModel.table_name == RecordModel.table_name,
            ExtraModel.partition_key == RecordModel.partition_key,
            ExtraModel.row_key == RecordModel.row_key,
            ExtraModel.name == parsed.field,
            predicate,
        )

    def write(self, data: Entity, partition: str, extra_fields: Optional[Sequence[str]] = None) -> None:
        self._tables.ensure()
        record = encode_record(data, partition, extra_fields)
        with self._session_factory.begin() as session:
            self._upsert(session, record)

    def write_batch(
        self, data: Sequence[Entity], partition: str, extra_fields: Optional[Sequence[str]] = None
    ) -> None:
        self._tables.ensure()
        if not data:
            return

        records = [encode_record(item, partition, extra_fields) for item in data]
        for batch in batched(records):
            with self._session_factory.begin() as session:
                for record in batch:
                    self._upsert(session, record)
            logger.debug(
                "Successfully wrote batch of %d entities to partition %s", len(batch), partition
            )

    def _upsert(self, session: Session, record: Entity) -> None:
        session.execute(
            delete(ExtraModel).where(
                ExtraModel.table_name == self.table_name,
                ExtraModel.partition_key == record[PARTITION_KEY],
                ExtraModel.row_key == record[ROW_KEY],
            )
        )
        session.merge(RecordModel(**_record_to_row(self.table_name, record)))
        session.add_all(_record_extras(self.table_name, record))

    def delete(self, key: str, partition: str) -> None:
        self.delete_batch([key], partition)

    def delete_batch(self, keys: Sequence[str], partition: str) -> None:
        self._tables.ensure()
        if not keys:
            return

        for batch in batched(list(keys)):
            with self._session_factory.begin() as session:
                session.execute(
                    delete(ExtraModel).where(
                        ExtraModel.table_name == self.table_name,
                        ExtraModel.partition_key == partition,
                        ExtraModel.row_key.in_(batch),
                    )
                )
                session.execute(
                    delete(RecordModel).where(
                        RecordModel.table_name == self.table_name,
                        RecordModel.partition_key == partition,
                        RecordModel.row_key.in_(batch),
                    )
                )
            logger.debug(
                "Successfully deleted batch of %d entities from partition %s", len(batch), partition
            )
