"""
Approval Routing Engine
Notification Service.

Central service for creating and querying in-app notifications. Approval
events reach it through the default listeners in approval_events.
"""

from sqlalchemy import select

from app.models import db
from app.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, tenant_id, recipient_user_id, title, message="", event_type,
               severity="info", entity_type="", entity_id=None, commit=True):
        """
        Create a single notification record.

        Returns:
            The created Notification instance.
        """
        notif = Notification(
            tenant_id=tenant_id,
            recipient_user_id=recipient_user_id,
            title=title,
            message=message,
            event_type=event_type,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, tenant_id, recipient_user_ids, title, message="", event_type,
                  severity="info", entity_type="", entity_id=None):
        """
        Send the same notification to several users in one commit.

        Returns:
            List of created Notification instances.
        """
        notifications = [
            NotificationService.create(
                tenant_id=tenant_id,
                recipient_user_id=user_id,
                title=title,
                message=message,
                event_type=event_type,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
                commit=False,
            )
            for user_id in dict.fromkeys(recipient_user_ids)
        ]
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Notifications for a user, newest first."""
        stmt = select(Notification).where(Notification.recipient_user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        stmt = stmt.limit(limit).offset(offset)
        return db.session.execute(stmt).scalars().all()

    @staticmethod
    def unread_count(user_id):
        return db.session.execute(
            select(db.func.count(Notification.id)).where(
                Notification.recipient_user_id == user_id,
                Notification.is_read.is_(False),
            )
        ).scalar_one()

    @staticmethod
    def mark_all_read(user_id):
        """Mark every unread notification of a user as read. Returns the count."""
        unread = db.session.execute(
            select(Notification).where(
                Notification.recipient_user_id == user_id,
                Notification.is_read.is_(False),
            )
        ).scalars().all()
        for notif in unread:
            notif.mark_read()
        db.session.commit()
        return len(unread)
