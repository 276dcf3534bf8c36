"""Durable at-least-once queue backed by the ``queue_messages`` table.

Producers publish inside their own transaction, so an event row commits
atomically with the state change that caused it. Consumers claim a batch
under a lease, then ack on success or nack for a delayed redelivery.
A message that keeps failing ends up ``dead`` instead of looping forever.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import AsyncSessionLocal, QueueMessage
from utils.errors import NonRetryableUpstreamError, PayloadValidationError
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("message_queue")

TOPIC_POSITION_OPEN = "position_open"
TOPIC_NOTIFICATION = "notification"

STATUS_PENDING = "pending"
STATUS_DONE = "done"
STATUS_DEAD = "dead"

NON_RETRYABLE_ERRORS = (ValidationError, PayloadValidationError, NonRetryableUpstreamError)


def make_dedupe_key(*parts: Any) -> str:
    packed = "|".join(str(p or "") for p in parts)
    return hashlib.sha256(packed.encode("utf-8")).hexdigest()[:32]


def _safe_json(value: Any) -> Any:
    """Round-trip through JSON so datetimes and enums are stored as plain values."""
    return json.loads(json.dumps(value, default=str))


@dataclass
class QueueBatchResult:
    topic: str
    claimed: int = 0
    acked: int = 0
    nacked: int = 0
    dead: int = 0

    def as_dict(self) -> dict:
        return {
            "topic": self.topic,
            "claimed": self.claimed,
            "acked": self.acked,
            "nacked": self.nacked,
            "dead": self.dead,
        }


async def publish(
    session: AsyncSession,
    topic: str,
    payload: dict[str, Any],
    *,
    dedupe_key: Optional[str] = None,
    commit: bool = True,
) -> QueueMessage:
    """Idempotently enqueue ``payload`` by ``(topic, dedupe_key)``.

    Republishing an existing key returns the stored row untouched, whatever
    its status, so a replayed producer never causes a second delivery.
    """
    payload = _safe_json(payload)
    key = dedupe_key or make_dedupe_key(topic, json.dumps(payload, sort_keys=True))

    for pending in session.new:
        if isinstance(pending, QueueMessage) and pending.topic == topic and pending.dedupe_key == key:
            return pending

    with session.no_autoflush:
        result = await session.execute(
            select(QueueMessage).where(QueueMessage.topic == topic, QueueMessage.dedupe_key == key)
        )
        row = result.scalar_one_or_none()
    if row is not None:
        logger.debug("Duplicate publish ignored", topic=topic, dedupe_key=key)
        return row

    now = utcnow()
    row = QueueMessage(
        topic=topic,
        dedupe_key=key,
        payload_json=payload,
        status=STATUS_PENDING,
        attempts=0,
        available_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    if commit:
        try:
            await session.commit()
        except IntegrityError:
            # Another producer inserted the same key between our read and commit.
            await session.rollback()
            result = await session.execute(
                select(QueueMessage).where(QueueMessage.topic == topic, QueueMessage.dedupe_key == key)
            )
            return result.scalar_one()
    return row


async def claim_batch(
    session: AsyncSession,
    topic: str,
    *,
    limit: Optional[int] = None,
    lease_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> list[QueueMessage]:
    """Claim due messages in delivery order.

    Each row is leased with a conditional update on its current
    ``available_at``; a row another consumer already leased is skipped. A
    consumer that dies mid-batch releases its rows when the lease expires.
    """
    now = now or utcnow()
    limit = limit or settings.QUEUE_BATCH_SIZE
    lease = timedelta(
        seconds=settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS if lease_seconds is None else lease_seconds
    )

    result = await session.execute(
        select(QueueMessage)
        .where(
            QueueMessage.topic == topic,
            QueueMessage.status == STATUS_PENDING,
            QueueMessage.available_at <= now,
        )
        .order_by(QueueMessage.id.asc())
        .limit(limit)
    )
    candidates = list(result.scalars().all())

    claimed: list[QueueMessage] = []
    for row in candidates:
        lease_result = await session.execute(
            update(QueueMessage)
            .where(
                QueueMessage.id == row.id,
                QueueMessage.status == STATUS_PENDING,
                QueueMessage.available_at == row.available_at,
            )
            .values(available_at=now + lease, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if lease_result.rowcount == 1:
            claimed.append(row)
    await session.commit()
    return claimed


async def ack(session: AsyncSession, message_id: int) -> None:
    now = utcnow()
    await session.execute(
        update(QueueMessage)
        .where(QueueMessage.id == message_id)
        .values(status=STATUS_DONE, updated_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def nack(
    session: AsyncSession,
    message_id: int,
    error: str,
    *,
    max_attempts: Optional[int] = None,
    retry_delay_seconds: Optional[float] = None,
) -> str:
    """Record a failed delivery. Returns the resulting status."""
    max_attempts = max_attempts or settings.QUEUE_MAX_ATTEMPTS
    retry_delay = settings.QUEUE_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds

    row = await session.get(QueueMessage, message_id, populate_existing=True)
    if row is None:
        return STATUS_DEAD

    now = utcnow()
    attempts = int(row.attempts or 0) + 1
    status = STATUS_DEAD if attempts >= max_attempts else STATUS_PENDING
    await session.execute(
        update(QueueMessage)
        .where(QueueMessage.id == message_id)
        .values(
            attempts=attempts,
            status=status,
            last_error=(error or "")[:1000],
            available_at=now + timedelta(seconds=retry_delay * attempts),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if status == STATUS_DEAD:
        logger.error("Queue message dead-lettered", message_id=message_id, attempts=attempts, error=error)
    return status


async def consume_batch(
    topic: str,
    handler: Callable[[dict[str, Any]], Awaitable[Any]],
    *,
    limit: Optional[int] = None,
    max_attempts: Optional[int] = None,
    retry_delay_seconds: Optional[float] = None,
) -> QueueBatchResult:
    """Claim a batch and run ``handler`` once per message, in delivery order.

    A handler exception nacks only that message; its siblings are still
    processed and acked. A malformed payload or an upstream rejection is
    dead-lettered on the first failure, since redelivery cannot change it.
    """
    result = QueueBatchResult(topic=topic)
    async with AsyncSessionLocal() as session:
        messages = await claim_batch(session, topic, limit=limit)
    result.claimed = len(messages)

    for message in messages:
        try:
            await handler(message.payload_json)
        except Exception as e:
            retryable = not isinstance(e, NON_RETRYABLE_ERRORS)
            logger.warning(
                "Queue handler failed",
                topic=topic,
                message_id=message.id,
                error=str(e),
                error_type=type(e).__name__,
                retryable=retryable,
            )
            async with AsyncSessionLocal() as session:
                status = await nack(
                    session,
                    message.id,
                    f"{type(e).__name__}: {e}",
                    max_attempts=max_attempts if retryable else 1,
                    retry_delay_seconds=retry_delay_seconds,
                )
            if status == STATUS_DEAD:
                result.dead += 1
            else:
                result.nacked += 1
            continue

        async with AsyncSessionLocal() as session:
            await ack(session, message.id)
        result.acked += 1

    return result


async def get_queue_depths(session: AsyncSession) -> dict[str, dict[str, int]]:
    """Message counts by topic and status for the admin view."""
    result = await session.execute(
        select(QueueMessage.topic, QueueMessage.status, func.count(QueueMessage.id)).group_by(
            QueueMessage.topic, QueueMessage.status
        )
    )
    depths: dict[str, dict[str, int]] = {}
    for topic, status, count in result.all():
        depths.setdefault(topic, {})[status] = int(count)
    return depths


async def purge_done_messages(session: AsyncSession, older_than: datetime) -> int:
    result = await session.execute(
        delete(QueueMessage).where(QueueMessage.status == STATUS_DONE, QueueMessage.updated_at < older_than)
    )
    await session.commit()
    return int(result.rowcount or 0)
