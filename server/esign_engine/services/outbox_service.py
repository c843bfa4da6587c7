from __future__ import annotations

from datetime import timedelta
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core import clock
from esign_engine.core.logging import get_logger
from esign_engine.models.event import EventOutbox, EventStatus, NotificationKind

logger = get_logger(__name__)

MAX_ATTEMPTS = 5

NotificationHandler = Callable[[EventOutbox], Awaitable[None]]


async def enqueue_notification(
    session: AsyncSession,
    *,
    contract_id: str | None,
    kind: NotificationKind,
    recipient: str,
    payload: dict,
    channel: str = "email",
    schedule_in_seconds: int = 0,
) -> EventOutbox:
    """Stage a notification in the caller's unit of work; the caller's flush writes it with the state change."""
    event = EventOutbox(
        contract_id=contract_id,
        kind=kind.value,
        recipient=recipient,
        payload=payload,
        channel=channel,
        next_run_at=clock.utcnow() + timedelta(seconds=schedule_in_seconds),
    )
    session.add(event)
    logger.info("notification.enqueued", kind=kind.value, channel=channel, contract_id=contract_id)
    return event


async def dispatch_pending_notifications(
    session: AsyncSession,
    handler: NotificationHandler | None = None,
) -> int:
    """Hand due notifications to the delivery collaborator.

    Failed deliveries are retried with linear back-off until ``MAX_ATTEMPTS``.
    Returns the number delivered in this pass.
    """
    now = clock.utcnow()
    result = await session.execute(
        select(EventOutbox)
        .where(
            or_(
                EventOutbox.status == EventStatus.PENDING,
                (EventOutbox.status == EventStatus.FAILED) & (EventOutbox.attempts < MAX_ATTEMPTS),
            ),
            EventOutbox.next_run_at <= now,
        )
        .order_by(EventOutbox.next_run_at)
    )
    events = result.scalars().all()
    dispatched = 0
    for event in events:
        try:
            if handler is not None:
                await handler(event)
        except Exception as exc:  # delivery collaborator failures are retried, not raised
            event.status = EventStatus.FAILED
            event.attempts += 1
            event.last_error = str(exc)
            event.next_run_at = now + timedelta(seconds=30 * event.attempts)
            logger.warning("notification.failed", event_id=event.id, kind=event.kind, error=str(exc))
            continue
        event.status = EventStatus.DISPATCHED
        event.attempts += 1
        event.last_error = None
        dispatched += 1
        logger.info("notification.dispatched", kind=event.kind, channel=event.channel)
    await session.flush()
    return dispatched
