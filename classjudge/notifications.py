import logging
from typing import Optional

from classjudge.models import Notification, async_session

logger = logging.getLogger(__name__)


class Notifier:
    """Writes in-app notifications. Delivery beyond the database is not handled here."""

    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    async def notify(self, recipient_id: str, title: str, message: str,
                     kind: str = "general", data: Optional[dict] = None,
                     sender_id: Optional[str] = None) -> Notification:
        notification = Notification(
            recipient_id=recipient_id,
            sender_id=sender_id,
            kind=kind,
            title=title,
            message=message,
            data=data or {},
        )
        async with self.session_factory() as session:
            session.add(notification)
            await session.commit()
        logger.debug(f"[Notify] {kind} -> {recipient_id}: {title}")
        return notification
