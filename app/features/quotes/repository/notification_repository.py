"""
Notification sink: batched inserts plus the inbox read-state queries.
"""

from typing import Any, Protocol

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_many, execute_query, fetch_all, fetch_val
from app.features.quotes.domain import Notification, PersistenceFailure
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class NotificationSink(Protocol):
    async def create_many(self, notifications: list[Notification]) -> None: ...

    async def unread_count(self, user_id: int) -> int: ...

    async def list_for_user(self, user_id: int, page: int = 1, limit: int = 20) -> dict[str, Any]: ...

    async def mark_as_read(self, notification_id: int, user_id: int) -> bool: ...

    async def mark_all_as_read(self, user_id: int) -> int: ...


class PostgresNotificationRepository:
    """NotificationSink backed by the notifications table."""

    INSERT_QUERY = """
        INSERT INTO notifications (
            user_id, type, title, message, related_entity_type, related_entity_id,
            action_url, is_read, is_email_sent, metadata
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, %s, %s)
    """

    async def create_many(self, notifications: list[Notification]) -> None:
        """Insert all notifications in a single transaction."""
        if not notifications:
            return

        params = [
            (
                n.recipient_id,
                n.type,
                n.title,
                n.message,
                n.related_entity_type,
                n.related_entity_id,
                n.action_url,
                n.is_delivery_sent,
                Jsonb(n.metadata or {}),
            )
            for n in notifications
        ]

        try:
            await execute_many(self.INSERT_QUERY, params)
        except DatabaseError as e:
            raise PersistenceFailure(
                f"Failed to create notifications: {e}", operation="create_notifications"
            ) from e

        logger.debug("Notifications created", count=len(notifications))

    async def unread_count(self, user_id: int) -> int:
        query = "SELECT COUNT(*) FROM notifications WHERE user_id = %s AND is_read = FALSE"
        try:
            return int(await fetch_val(query, (user_id,)) or 0)
        except DatabaseError as e:
            raise PersistenceFailure(f"Failed to count unread: {e}", operation="unread_count") from e

    async def list_for_user(self, user_id: int, page: int = 1, limit: int = 20) -> dict[str, Any]:
        """Newest first, with the total count for pagination."""
        page = max(page, 1)
        offset = (page - 1) * limit

        try:
            total = int(
                await fetch_val("SELECT COUNT(*) FROM notifications WHERE user_id = %s", (user_id,))
                or 0
            )
            rows = await fetch_all(
                """
                SELECT id, user_id, type, title, message, related_entity_type,
                       related_entity_id, action_url, is_read, is_email_sent,
                       metadata, created_at, read_at
                FROM notifications
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            )
        except DatabaseError as e:
            raise PersistenceFailure(f"Failed to list notifications: {e}", operation="list_for_user") from e

        notifications = [
            Notification(
                id=row["id"],
                recipient_id=row["user_id"],
                type=row["type"],
                title=row["title"],
                message=row["message"],
                related_entity_type=row.get("related_entity_type"),
                related_entity_id=row.get("related_entity_id"),
                action_url=row.get("action_url"),
                is_read=bool(row["is_read"]),
                is_delivery_sent=bool(row.get("is_email_sent")),
                metadata=row.get("metadata") or {},
                created_at=row.get("created_at"),
                read_at=row.get("read_at"),
            )
            for row in rows
        ]

        return {
            "notifications": notifications,
            "total_count": total,
            "has_more": offset + limit < total,
        }

    async def mark_as_read(self, notification_id: int, user_id: int) -> bool:
        query = """
            UPDATE notifications
            SET is_read = TRUE, read_at = NOW()
            WHERE id = %s AND user_id = %s AND is_read = FALSE
        """
        try:
            return await execute_query(query, (notification_id, user_id)) == 1
        except DatabaseError as e:
            raise PersistenceFailure(f"Failed to mark notification read: {e}", operation="mark_as_read") from e

    async def mark_all_as_read(self, user_id: int) -> int:
        query = """
            UPDATE notifications
            SET is_read = TRUE, read_at = NOW()
            WHERE user_id = %s AND is_read = FALSE
        """
        try:
            return await execute_query(query, (user_id,))
        except DatabaseError as e:
            raise PersistenceFailure(
                f"Failed to mark notifications read: {e}", operation="mark_all_as_read"
            ) from e
