"""
Document store operations for the finance sync engine.

This module defines the store boundary used by every service (the
``DocumentStore`` protocol, write operations and field filters) and a
SQLAlchemy-backed implementation, ``DatabaseManager``, that keeps each
document as an encrypted JSON payload in a single ``documents`` table.
Supports SQLite by default with easy migration to other databases.

Documents live at slash-separated paths scoped under the owning user:
``users/{uid}/{collection}/{doc_id}``.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy import Column, DateTime, String, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from encryption_utils import EncryptedJSON
from exceptions import StoreError, StoreWriteError

# Configure logging
logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_MAX_BATCH_SIZE = 500

# Per-user collection names
ACCOUNTS = "accounts"
TRANSACTIONS = "transactions"
BUDGET_CATEGORIES = "budgetCategories"
BUDGET = "budget"
MONTHLY_SUMMARIES = "monthlySummaries"
SAVINGS_TIPS = "savingsTips"
CATEGORY_MAPPINGS = "categoryMappings"

BUDGET_SETTINGS_ID = "settings"


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(UTC)


def new_document_id() -> str:
    """Return a fresh store-assigned document identifier."""
    return uuid.uuid4().hex


def collection_path(user_id: str, collection: str) -> str:
    """Return the path of a per-user collection."""
    return f"users/{user_id}/{collection}"


def document_path(user_id: str, collection: str, doc_id: str) -> str:
    """Return the path of a document inside a per-user collection."""
    return f"{collection_path(user_id, collection)}/{doc_id}"


def split_path(path: str) -> tuple[str, str]:
    """
    Split a document path into its collection path and document id.

    Raises:
        StoreError: If the path has no collection component.
    """
    parent, sep, doc_id = path.rpartition("/")
    if not sep or not parent or not doc_id:
        raise StoreError("Invalid document path", details={"path": path})
    return parent, doc_id


@dataclass(frozen=True)
class WriteOp:
    """
    A single write inside a batch commit.

    Attributes:
        kind: "merge" (field-level upsert), "replace" (full document) or "delete"
        path: Document path
        data: Fields to write (ignored for deletes)
    """
    kind: str
    path: str
    data: Dict[str, Any] = field(default_factory=dict)

    MERGE = "merge"
    REPLACE = "replace"
    DELETE = "delete"

    @classmethod
    def merge(cls, path: str, data: Dict[str, Any]) -> "WriteOp":
        return cls(cls.MERGE, path, dict(data))

    @classmethod
    def replace(cls, path: str, data: Dict[str, Any]) -> "WriteOp":
        return cls(cls.REPLACE, path, dict(data))

    @classmethod
    def delete(cls, path: str) -> "WriteOp":
        return cls(cls.DELETE, path)


_FILTER_OPS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


@dataclass(frozen=True)
class FieldFilter:
    """
    Equality/range predicate on a top-level document field.

    A document without the field never matches.
    """
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: Dict[str, Any]) -> bool:
        if self.field not in data:
            return False
        try:
            return _FILTER_OPS[self.op](data[self.field], self.value)
        except TypeError:
            return False


@dataclass
class Document:
    """A stored document returned from a query."""
    path: str
    id: str
    data: Dict[str, Any]


class DocumentStore(Protocol):
    """
    Asynchronous document store consumed by the engine.

    ``batch_commit`` is atomic and rejects more than ``max_batch_size``
    operations.
    """

    max_batch_size: int

    async def get(self, path: str) -> Optional[Dict[str, Any]]: ...

    async def set_merge(self, path: str, fields: Dict[str, Any]) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def batch_commit(self, ops: Sequence[WriteOp]) -> None: ...

    async def query(
        self,
        collection: str,
        filters: Optional[Iterable[FieldFilter]] = None
    ) -> List[Document]: ...


class DocumentRecord(Base):
    """
    SQLAlchemy model holding one document.

    Attributes:
        path: Full document path (primary key)
        collection: Parent collection path
        doc_id: Last path component
        data: Encrypted JSON payload
        created_at: First write timestamp
        updated_at: Last write timestamp
    """

    __tablename__ = "documents"

    path = Column(String(512), primary_key=True)
    collection = Column(String(512), nullable=False, index=True)
    doc_id = Column(String(255), nullable=False)
    data = Column(EncryptedJSON(), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<DocumentRecord(path='{self.path}')>"


class DatabaseManager:
    """
    SQLAlchemy implementation of the document store.

    Blocking session work runs in a worker thread so coroutines awaiting the
    store never block the event loop. Session work is serialized with a lock
    because SQLite connections are shared across worker threads.
    """

    def __init__(self, connection_string: str, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        """
        Initialize the database manager.

        Args:
            connection_string: SQLAlchemy connection string (e.g., 'sqlite:///data/finance_sync.db')
            max_batch_size: Hard limit on operations per batch commit

        Raises:
            SQLAlchemyError: If database connection fails
        """
        self.max_batch_size = max_batch_size
        self._lock = threading.Lock()
        engine_kwargs: Dict[str, Any] = {"echo": False}
        if connection_string.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if connection_string in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        try:
            self.engine = create_engine(connection_string, **engine_kwargs)
            self.SessionLocal = sessionmaker(bind=self.engine)
            logger.info(f"Database manager initialized with connection: {connection_string}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DatabaseManager":
        """Build a manager from the ``database`` config section and create tables."""
        from utils import resolve_connection_string

        db_config = config.get("database", {})
        manager = cls(
            resolve_connection_string(config),
            max_batch_size=int(db_config.get("max_batch_size", DEFAULT_MAX_BATCH_SIZE)),
        )
        manager.create_tables()
        return manager

    def create_tables(self) -> None:
        """
        Create all database tables if they don't exist.

        Raises:
            SQLAlchemyError: If table creation fails
        """
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created/verified successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    def get_session(self) -> Session:
        """
        Get a new database session.

        Note:
            Caller is responsible for closing the session.
        """
        return self.SessionLocal()

    # Synchronous operations, run inside worker threads

    def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            session = self.get_session()
            try:
                record = session.get(DocumentRecord, path)
                return dict(record.data) if record is not None else None
            except SQLAlchemyError as e:
                logger.error(f"Failed to read document {path}: {e}")
                raise StoreError("Failed to read document", details={"path": path}, original_error=e) from e
            finally:
                session.close()

    def query_documents(
        self,
        collection: str,
        filters: Optional[Iterable[FieldFilter]] = None
    ) -> List[Document]:
        """
        Return documents of a collection matching every filter, ordered by id.

        Filters are evaluated after decryption since payloads are opaque to SQL.
        """
        filters = list(filters or [])
        with self._lock:
            session = self.get_session()
            try:
                records = session.scalars(
                    select(DocumentRecord)
                    .where(DocumentRecord.collection == collection)
                    .order_by(DocumentRecord.doc_id)
                ).all()
                documents = [
                    Document(path=record.path, id=record.doc_id, data=dict(record.data))
                    for record in records
                ]
            except SQLAlchemyError as e:
                logger.error(f"Failed to query collection {collection}: {e}")
                raise StoreError(
                    "Failed to query collection",
                    details={"collection": collection},
                    original_error=e
                ) from e
            finally:
                session.close()
        return [doc for doc in documents if all(f.matches(doc.data) for f in filters)]

    def commit_operations(self, ops: Sequence[WriteOp]) -> None:
        """
        Apply all operations in one transaction; all commit or none do.

        Raises:
            StoreWriteError: If the batch is oversized or the commit fails
        """
        if len(ops) > self.max_batch_size:
            raise StoreWriteError(
                "Batch exceeds store limit",
                details={"operations": len(ops), "max_batch_size": self.max_batch_size}
            )
        with self._lock:
            session = self.get_session()
            try:
                for op in ops:
                    self._apply(session, op)
                session.commit()
                logger.debug(f"Committed batch of {len(ops)} operations")
            except StoreError:
                session.rollback()
                raise
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to commit batch: {e}")
                raise StoreWriteError(
                    "Batch commit failed",
                    details={"operations": len(ops)},
                    original_error=e
                ) from e
            finally:
                session.close()

    @staticmethod
    def _apply(session: Session, op: WriteOp) -> None:
        record = session.get(DocumentRecord, op.path)
        if op.kind == WriteOp.DELETE:
            if record is not None:
                session.delete(record)
                session.flush()
            return

        if record is None:
            parent, doc_id = split_path(op.path)
            record = DocumentRecord(path=op.path, collection=parent, doc_id=doc_id, data=dict(op.data))
            session.add(record)
        elif op.kind == WriteOp.MERGE:
            merged = dict(record.data)
            merged.update(op.data)
            record.data = merged
        elif op.kind == WriteOp.REPLACE:
            record.data = dict(op.data)
        else:
            raise StoreWriteError("Unknown write operation", details={"kind": op.kind})
        # Flush per op so a later op on the same path sees this one.
        session.flush()

    # Asynchronous DocumentStore interface

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.get_document, path)

    async def set_merge(self, path: str, fields: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.commit_operations, [WriteOp.merge(path, fields)])

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self.commit_operations, [WriteOp.delete(path)])

    async def batch_commit(self, ops: Sequence[WriteOp]) -> None:
        await asyncio.to_thread(self.commit_operations, list(ops))

    async def query(
        self,
        collection: str,
        filters: Optional[Iterable[FieldFilter]] = None
    ) -> List[Document]:
        return await asyncio.to_thread(self.query_documents, collection, filters)

    def close(self) -> None:
        """Close the database engine connection."""
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("Database connection closed")
