"""Notification records for the external chat channel."""

import logging
from typing import List, Optional

from foundry_host.models.notification import Notification, NotificationType
from telegram_bot.notify import send_telegram_message


class NotificationService:
    def __init__(self, store, push=send_telegram_message):
        self.store = store
        self._push = push

    async def record(
        self,
        notification_type,
        user_id: str,
        message: str,
        session_id: Optional[str] = None,
        instance_url: Optional[str] = None,
    ) -> Notification:
        notification_type = NotificationType(notification_type)
        notification = await self.store.create(
            Notification(
                notification_type=notification_type.value,
                user_id=user_id,
                session_id=session_id,
                message=message,
                instance_url=instance_url,
                delivered=False,
            )
        )
        logging.info(
            "Recorded %s notification %s for user %s",
            notification_type.value,
            notification.id,
            user_id,
        )
        if self._push is not None and str(user_id).isdigit():
            text = message if not instance_url else f"{message}\n{instance_url}"
            if await self._push(chat_id=int(user_id), text=text):
                notification = await self.store.update(
                    Notification, notification.id, {"delivered": True}
                )
        return notification

    async def pending_for_user(self, user_id: str) -> List[Notification]:
        """Undelivered notifications for ``user_id``; marks them delivered."""
        pending = await self.store.scan(Notification, user_id=user_id, delivered=False)
        pending.sort(key=lambda n: n.id)
        return [
            await self.store.update(Notification, notification.id, {"delivered": True})
            for notification in pending
        ]
