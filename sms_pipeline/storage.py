import abc
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, inspect, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from sms_pipeline.config import settings
from sms_pipeline.lifecycle import MessageState, WebhookEventStatus, allowed_sources, can_transition
from sms_pipeline.schemas import MessageRecord, SmsStats, WebhookEventRecord

logger = logging.getLogger(__name__)


def _engine_kwargs(database_url: str) -> dict:
    kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        # SQLite connections are handed between threads by aiosqlite
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

# Base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime:
    # naive UTC, as SQLite hands datetimes back without tzinfo
    return datetime.now(timezone.utc).replace(tzinfo=None)


class _CreationClock:
    """
    Strictly increasing creation timestamps.

    Listings sort newest first on created_at; two rows created within one
    clock tick would otherwise fall back to comparing random ids.
    """

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = _utcnow()
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


_next_created_at = _CreationClock()


async def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from sms_pipeline import models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_db() -> None:
    """Release pooled connections. Called during application shutdown."""
    await engine.dispose()


async def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            has_table = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).has_table("sms_logs")
            )
        if not has_table:
            logger.error("Database schema not applied: 'sms_logs' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Log Store
# =============================================================================

class MessageLogStore(abc.ABC):
    """
    Persistent record of outbound messages and received webhooks.

    Implementations must make ``update_state`` an atomic compare-and-set:
    the transition is applied only if the record's current state is an
    allowed source for the target state, so concurrent callbacks for one
    message can never move it backwards.
    """

    @abc.abstractmethod
    async def create(self, recipient: str, body: str) -> MessageRecord:
        """Create a PENDING record."""

    @abc.abstractmethod
    async def get(self, record_id: str) -> Optional[MessageRecord]:
        ...

    @abc.abstractmethod
    async def find_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        ...

    @abc.abstractmethod
    async def update_state(
        self,
        record_id: str,
        state: MessageState,
        provider_message_id: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        """
        Move a record to ``state``.

        Returns:
            True if the transition was applied, False if the record is
            missing, the transition is not allowed from its current state,
            a different provider id is already set on it, or the provider
            id already belongs to another record.
        """

    @abc.abstractmethod
    async def list_records(
        self,
        limit: int = 50,
        offset: int = 0,
        state: Optional[MessageState] = None,
    ) -> Tuple[List[MessageRecord], int]:
        """Return a page of records, newest first, and the total matching."""

    @abc.abstractmethod
    async def stats(self) -> SmsStats:
        ...

    @abc.abstractmethod
    async def create_webhook_event(self, source: str, payload: Dict[str, Any]) -> str:
        """Record a RECEIVED webhook and return its id."""

    @abc.abstractmethod
    async def update_webhook_event(
        self,
        event_id: str,
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> None:
        ...

    @abc.abstractmethod
    async def list_webhook_events(self, limit: int = 50) -> List[WebhookEventRecord]:
        ...


def _build_stats(counts: Dict[MessageState, int]) -> SmsStats:
    total = sum(counts.values())
    sent = counts.get(MessageState.SENT, 0)
    delivered = counts.get(MessageState.DELIVERED, 0)
    return SmsStats(
        total=total,
        pending=counts.get(MessageState.PENDING, 0),
        sent=sent,
        delivered=delivered,
        failed=counts.get(MessageState.FAILED, 0),
        success_rate=round((sent + delivered) / total * 100, 2) if total else 0.0,
    )


class SqlMessageLogStore(MessageLogStore):
    """
    SQLAlchemy-backed store. Every operation runs in its own session.

    Args:
        session_factory: async_sessionmaker to open sessions from
    """

    def __init__(self, session_factory: async_sessionmaker = None):
        self._session_factory = session_factory or SessionLocal

    async def create(self, recipient: str, body: str) -> MessageRecord:
        from sms_pipeline.models import SmsLog

        now = _next_created_at()
        row = SmsLog(
            id=str(uuid.uuid4()),
            recipient=recipient,
            body=body,
            state=MessageState.PENDING,
            provider_message_id=None,
            error_detail=None,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        logger.debug(f"Created sms log {row.id}")
        return MessageRecord.model_validate(row)

    async def get(self, record_id: str) -> Optional[MessageRecord]:
        from sms_pipeline.models import SmsLog

        async with self._session_factory() as session:
            row = await session.get(SmsLog, record_id)
            return MessageRecord.model_validate(row) if row else None

    async def find_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        from sms_pipeline.models import SmsLog

        async with self._session_factory() as session:
            result = await session.execute(
                select(SmsLog).where(SmsLog.provider_message_id == provider_message_id)
            )
            row = result.scalar_one_or_none()
            return MessageRecord.model_validate(row) if row else None

    async def update_state(
        self,
        record_id: str,
        state: MessageState,
        provider_message_id: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        from sms_pipeline.models import SmsLog

        sources = [s for s in MessageState if s in allowed_sources(state)]
        if not sources:
            return False

        values = {
            "state": state,
            "updated_at": _utcnow(),
            "error_detail": error_detail if state == MessageState.FAILED else None,
        }
        stmt = update(SmsLog).where(SmsLog.id == record_id, SmsLog.state.in_(sources))
        if provider_message_id is not None:
            # provider ids are write-once
            stmt = stmt.where(
                (SmsLog.provider_message_id.is_(None))
                | (SmsLog.provider_message_id == provider_message_id)
            )
            values["provider_message_id"] = provider_message_id

        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt.values(**values))
                await session.commit()
            except IntegrityError:
                # another record already holds this provider id
                await session.rollback()
                logger.error(f"Sms log {record_id}: provider id {provider_message_id} already assigned")
                return False

        applied = result.rowcount == 1
        if applied:
            logger.info(f"Sms log {record_id} -> {state.value}")
        else:
            logger.info(f"Sms log {record_id}: transition to {state.value} not applied")
        return applied

    async def list_records(
        self,
        limit: int = 50,
        offset: int = 0,
        state: Optional[MessageState] = None,
    ) -> Tuple[List[MessageRecord], int]:
        from sms_pipeline.models import SmsLog

        query = select(SmsLog)
        count_query = select(func.count(SmsLog.id))
        if state is not None:
            query = query.where(SmsLog.state == state)
            count_query = count_query.where(SmsLog.state == state)

        # created_at is strictly increasing per process; id only breaks ties
        # between rows written by different processes
        query = query.order_by(SmsLog.created_at.desc(), SmsLog.id.desc()).offset(offset).limit(limit)

        async with self._session_factory() as session:
            total = (await session.execute(count_query)).scalar() or 0
            rows = (await session.execute(query)).scalars().all()

        logger.debug(f"Retrieved {len(rows)} of {total} sms logs")
        return [MessageRecord.model_validate(row) for row in rows], total

    async def stats(self) -> SmsStats:
        from sms_pipeline.models import SmsLog

        async with self._session_factory() as session:
            result = await session.execute(
                select(SmsLog.state, func.count(SmsLog.id)).group_by(SmsLog.state)
            )
            counts = {row[0]: row[1] for row in result.all()}
        return _build_stats(counts)

    async def create_webhook_event(self, source: str, payload: Dict[str, Any]) -> str:
        from sms_pipeline.models import WebhookLog

        now = _next_created_at()
        row = WebhookLog(
            id=str(uuid.uuid4()),
            source=source,
            payload=payload,
            status=WebhookEventStatus.RECEIVED,
            error_message=None,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return row.id

    async def update_webhook_event(
        self,
        event_id: str,
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> None:
        from sms_pipeline.models import WebhookLog

        async with self._session_factory() as session:
            await session.execute(
                update(WebhookLog)
                .where(WebhookLog.id == event_id)
                .values(status=status, error_message=error_message, updated_at=_utcnow())
            )
            await session.commit()

    async def list_webhook_events(self, limit: int = 50) -> List[WebhookEventRecord]:
        from sms_pipeline.models import WebhookLog

        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(WebhookLog).order_by(WebhookLog.created_at.desc()).limit(limit)
                )
            ).scalars().all()
        return [WebhookEventRecord.model_validate(row) for row in rows]


class InMemoryMessageLogStore(MessageLogStore):
    """Process-local store. A single asyncio.Lock serializes all mutations."""

    def __init__(self):
        self._records: Dict[str, MessageRecord] = {}
        self._by_provider_id: Dict[str, str] = {}
        self._webhook_events: Dict[str, WebhookEventRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, recipient: str, body: str) -> MessageRecord:
        now = _next_created_at()
        record = MessageRecord(
            id=str(uuid.uuid4()),
            recipient=recipient,
            body=body,
            state=MessageState.PENDING,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._records[record.id] = record
        return record.model_copy()

    async def get(self, record_id: str) -> Optional[MessageRecord]:
        record = self._records.get(record_id)
        return record.model_copy() if record else None

    async def find_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        record_id = self._by_provider_id.get(provider_message_id)
        if record_id is None:
            return None
        return await self.get(record_id)

    async def update_state(
        self,
        record_id: str,
        state: MessageState,
        provider_message_id: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None or not can_transition(record.state, state):
                return False

            changes = {
                "state": state,
                "updated_at": _utcnow(),
                "error_detail": error_detail if state == MessageState.FAILED else None,
            }
            if provider_message_id is not None:
                if record.provider_message_id not in (None, provider_message_id):
                    return False
                owner = self._by_provider_id.get(provider_message_id)
                if owner is not None and owner != record_id:
                    logger.error(f"Sms log {record_id}: provider id {provider_message_id} already assigned")
                    return False
                self._by_provider_id[provider_message_id] = record_id
                changes["provider_message_id"] = provider_message_id

            self._records[record_id] = record.model_copy(update=changes)
            return True

    async def list_records(
        self,
        limit: int = 50,
        offset: int = 0,
        state: Optional[MessageState] = None,
    ) -> Tuple[List[MessageRecord], int]:
        # dicts keep insertion order, so newest first is the reverse of it
        records = [r for r in reversed(self._records.values()) if state is None or r.state == state]
        page = records[offset:offset + limit]
        return [r.model_copy() for r in page], len(records)

    async def stats(self) -> SmsStats:
        counts: Dict[MessageState, int] = {}
        for record in self._records.values():
            counts[record.state] = counts.get(record.state, 0) + 1
        return _build_stats(counts)

    async def create_webhook_event(self, source: str, payload: Dict[str, Any]) -> str:
        now = _next_created_at()
        event = WebhookEventRecord(
            id=str(uuid.uuid4()),
            source=source,
            payload=payload,
            status=WebhookEventStatus.RECEIVED,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._webhook_events[event.id] = event
        return event.id

    async def update_webhook_event(
        self,
        event_id: str,
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._lock:
            event = self._webhook_events.get(event_id)
            if event is not None:
                self._webhook_events[event_id] = event.model_copy(
                    update={"status": status, "error_message": error_message, "updated_at": _utcnow()}
                )

    async def list_webhook_events(self, limit: int = 50) -> List[WebhookEventRecord]:
        events = list(reversed(self._webhook_events.values()))
        return [e.model_copy() for e in events[:limit]]
