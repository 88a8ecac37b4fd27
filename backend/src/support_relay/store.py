from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, create_engine, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class MappingStoreError(RuntimeError):
    """Raised when the mapping store cannot complete an operation."""


class DuplicateKeyError(MappingStoreError):
    """Raised when an insert would violate a unique key."""


class MappingNotFoundError(MappingStoreError):
    """Raised when no thread mapping exists for a remote conversation id."""


@dataclass(frozen=True)
class ThreadMappingRecord:
    thread_id: str
    channel_id: str
    remote_conversation_id: str
    created_at: datetime


@dataclass(frozen=True)
class ProcessedWebhookRecord:
    webhook_id: str
    processed_at: datetime


class MappingStore(Protocol):
    def reset(self) -> None: ...

    def create_mapping(
        self,
        *,
        thread_id: str,
        channel_id: str,
        remote_conversation_id: str,
    ) -> ThreadMappingRecord: ...

    def find_by_thread_id(self, thread_id: str) -> ThreadMappingRecord | None: ...

    def find_by_remote_conversation_id(self, remote_conversation_id: str) -> ThreadMappingRecord: ...

    def has_processed_webhook(self, webhook_id: str) -> bool: ...

    def mark_webhook_processed(self, webhook_id: str) -> ProcessedWebhookRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryMappingStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._mappings_by_thread: dict[str, ThreadMappingRecord] = {}
        self._thread_by_remote: dict[str, str] = {}
        self._processed_webhooks: dict[str, ProcessedWebhookRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._mappings_by_thread.clear()
            self._thread_by_remote.clear()
            self._processed_webhooks.clear()

    def create_mapping(
        self,
        *,
        thread_id: str,
        channel_id: str,
        remote_conversation_id: str,
    ) -> ThreadMappingRecord:
        with self._lock:
            if thread_id in self._mappings_by_thread:
                raise DuplicateKeyError(f"thread {thread_id} is already mapped")
            if remote_conversation_id in self._thread_by_remote:
                raise DuplicateKeyError(f"conversation {remote_conversation_id} is already mapped")
            record = ThreadMappingRecord(
                thread_id=thread_id,
                channel_id=channel_id,
                remote_conversation_id=remote_conversation_id,
                created_at=_now_utc(),
            )
            self._mappings_by_thread[thread_id] = record
            self._thread_by_remote[remote_conversation_id] = thread_id
            return record

    def find_by_thread_id(self, thread_id: str) -> ThreadMappingRecord | None:
        with self._lock:
            return self._mappings_by_thread.get(thread_id)

    def find_by_remote_conversation_id(self, remote_conversation_id: str) -> ThreadMappingRecord:
        with self._lock:
            thread_id = self._thread_by_remote.get(remote_conversation_id)
            if thread_id is None:
                raise MappingNotFoundError(remote_conversation_id)
            return self._mappings_by_thread[thread_id]

    def has_processed_webhook(self, webhook_id: str) -> bool:
        with self._lock:
            return webhook_id in self._processed_webhooks

    def mark_webhook_processed(self, webhook_id: str) -> ProcessedWebhookRecord:
        with self._lock:
            if webhook_id in self._processed_webhooks:
                raise DuplicateKeyError(f"webhook {webhook_id} is already processed")
            record = ProcessedWebhookRecord(webhook_id=webhook_id, processed_at=_now_utc())
            self._processed_webhooks[webhook_id] = record
            return record


class RelayStoreBase(DeclarativeBase):
    pass


class _ThreadMappingRow(RelayStoreBase):
    __tablename__ = "thread_mappings"

    thread_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_conversation_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ProcessedWebhookRow(RelayStoreBase):
    __tablename__ = "processed_webhooks"

    webhook_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyMappingStore:
    """Mapping store backed by a SQL database.

    Uniqueness is enforced by the table constraints, so two concurrent inserts
    for the same key resolve inside the database: the loser sees an
    ``IntegrityError`` which is reported as ``DuplicateKeyError``.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=sqlalchemy")
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RelayStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ProcessedWebhookRow))
                session.execute(delete(_ThreadMappingRow))

    def create_mapping(
        self,
        *,
        thread_id: str,
        channel_id: str,
        remote_conversation_id: str,
    ) -> ThreadMappingRecord:
        row = _ThreadMappingRow(
            thread_id=thread_id,
            channel_id=channel_id,
            remote_conversation_id=remote_conversation_id,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateKeyError(
                f"thread {thread_id} or conversation {remote_conversation_id} is already mapped"
            ) from exc
        except SQLAlchemyError as exc:
            raise MappingStoreError(f"failed to persist mapping for thread {thread_id}") from exc
        return self._mapping_record(row)

    def find_by_thread_id(self, thread_id: str) -> ThreadMappingRecord | None:
        try:
            with self._session() as session:
                row = session.get(_ThreadMappingRow, thread_id)
                return self._mapping_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise MappingStoreError(f"failed to look up thread {thread_id}") from exc

    def find_by_remote_conversation_id(self, remote_conversation_id: str) -> ThreadMappingRecord:
        try:
            with self._session() as session:
                row = session.scalar(
                    select(_ThreadMappingRow).where(
                        _ThreadMappingRow.remote_conversation_id == remote_conversation_id
                    )
                )
        except SQLAlchemyError as exc:
            raise MappingStoreError(f"failed to look up conversation {remote_conversation_id}") from exc
        if row is None:
            raise MappingNotFoundError(remote_conversation_id)
        return self._mapping_record(row)

    def has_processed_webhook(self, webhook_id: str) -> bool:
        try:
            with self._session() as session:
                return session.get(_ProcessedWebhookRow, webhook_id) is not None
        except SQLAlchemyError as exc:
            raise MappingStoreError(f"failed to check webhook {webhook_id}") from exc

    def mark_webhook_processed(self, webhook_id: str) -> ProcessedWebhookRecord:
        row = _ProcessedWebhookRow(webhook_id=webhook_id, processed_at=_now_utc())
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateKeyError(f"webhook {webhook_id} is already processed") from exc
        except SQLAlchemyError as exc:
            raise MappingStoreError(f"failed to mark webhook {webhook_id}") from exc
        return ProcessedWebhookRecord(webhook_id=row.webhook_id, processed_at=row.processed_at)

    @staticmethod
    def _mapping_record(row: _ThreadMappingRow) -> ThreadMappingRecord:
        return ThreadMappingRecord(
            thread_id=row.thread_id,
            channel_id=row.channel_id,
            remote_conversation_id=row.remote_conversation_id,
            created_at=row.created_at,
        )


def create_mapping_store(*, backend: str, database_url: str) -> MappingStore:
    normalized = backend.strip().lower()
    if normalized == "sqlalchemy":
        return SqlAlchemyMappingStore(database_url)
    if normalized == "inmemory":
        return InMemoryMappingStore()
    raise RuntimeError(f"unsupported RELAY_STORE_BACKEND: {backend}")
