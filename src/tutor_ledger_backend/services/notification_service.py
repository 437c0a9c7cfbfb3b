'''
Notification outbox.

Services enqueue rows inside the financial transaction; the dispatcher
delivers them afterwards, in the background, through a `Notifier`.
Delivery is at-least-once and never blocks or rolls back the write that
produced the notification.
'''
import asyncio
from datetime import timedelta
from typing import Annotated, Any, Optional, Protocol

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.models import utcnow
from ..database.db_enums import NotificationStatusEnum
from ..common.config import settings
from ..common.exceptions import DownstreamNotificationError
from ..common.logger import log
from .audit_service import to_jsonable

OPERATOR_RECIPIENT = "role:admin"


def guardian_recipient(guardian_id) -> str:
    return f"guardian:{guardian_id}"


class Notifier(Protocol):
    async def notify(self, recipient: str, title: str, message: str, metadata: dict[str, Any]) -> None:
        ...


class LogNotifier:
    """Default notifier: writes the notification to the application log."""
    async def notify(self, recipient: str, title: str, message: str, metadata: dict[str, Any]) -> None:
        log.info(f"[notify] to={recipient} title='{title}' message='{message}'")


class NotificationService:
    def __init__(self, db: Annotated[AsyncSession, Depends(get_db_session)]):
        self.db = db

    async def enqueue(
        self,
        recipient: str,
        title: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> db_models.Notifications:
        row = db_models.Notifications(
            recipient=recipient,
            title=title,
            message=message,
            meta=to_jsonable(metadata or {}),
            status=NotificationStatusEnum.PENDING.value,
            attempts=0,
            created_at=utcnow(),
            next_attempt_at=utcnow(),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def notify_operators(self, title: str, message: str, metadata: Optional[dict[str, Any]] = None) -> db_models.Notifications:
        return await self.enqueue(OPERATOR_RECIPIENT, title, message, metadata)

    async def list_pending(self) -> list[db_models.Notifications]:
        stmt = select(db_models.Notifications).filter(
            db_models.Notifications.status == NotificationStatusEnum.PENDING.value
        ).order_by(db_models.Notifications.created_at)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())


class NotificationDispatcher:
    """Background task draining the outbox."""
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[Notifier] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        batch_size: int = 50,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier or LogNotifier()
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SECONDS
        self.max_attempts = max_attempts if max_attempts is not None else settings.NOTIFICATION_MAX_ATTEMPTS
        self.poll_interval = poll_interval if poll_interval is not None else settings.NOTIFICATION_POLL_INTERVAL_SECONDS
        self.batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self.run())
        log.info("Notification dispatcher started.")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("Notification dispatcher stopped.")

    async def run(self) -> None:
        while self._running:
            try:
                await self.dispatch_pending()
            except Exception as e:
                # the loop must survive a broken database connection
                log.error(f"Notification dispatch pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def dispatch_pending(self) -> int:
        """Runs one delivery pass. Returns the number of rows delivered."""
        delivered = 0
        async with self.session_factory() as session:
            now = utcnow()
            stmt = select(db_models.Notifications).filter(
                db_models.Notifications.status == NotificationStatusEnum.PENDING.value,
                db_models.Notifications.next_attempt_at <= now,
            ).order_by(db_models.Notifications.created_at).limit(self.batch_size)
            rows = (await session.execute(stmt)).scalars().all()

            for row in rows:
                try:
                    await self._deliver(row)
                except DownstreamNotificationError as e:
                    self._handle_failure(row, e)
                    continue
                row.status = NotificationStatusEnum.DELIVERED.value
                row.attempts += 1
                row.delivered_at = utcnow()
                delivered += 1

            await session.commit()
        return delivered

    async def _deliver(self, row: db_models.Notifications) -> None:
        try:
            await asyncio.wait_for(
                self.notifier.notify(row.recipient, row.title, row.message, row.meta or {}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise DownstreamNotificationError(
                f"Notifier timed out after {self.timeout}s.", {"notification_id": str(row.id)}
            ) from e
        except Exception as e:
            raise DownstreamNotificationError(
                f"Notifier failed: {e}", {"notification_id": str(row.id)}
            ) from e

    def _handle_failure(self, row: db_models.Notifications, error: DownstreamNotificationError) -> None:
        row.attempts += 1
        row.last_error = error.message
        if row.attempts >= self.max_attempts:
            row.status = NotificationStatusEnum.FAILED.value
            log.error(f"Notification {row.id} to {row.recipient} failed permanently after {row.attempts} attempts: {error.message}")
            return
        # linear backoff
        row.next_attempt_at = utcnow() + timedelta(seconds=self.poll_interval * row.attempts)
        log.warning(f"Notification {row.id} to {row.recipient} failed (attempt {row.attempts}): {error.message}")
