"""In-app notification inbox shown on the member dashboard."""

from sqlalchemy import update

from .errors import NotFoundError
from .extensions import atomic, db
from .models import Notification, Role, User


def add_notification(user_id, title, message, kind):
    """Stage an inbox entry in the caller's transaction."""
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        notification_type=kind,
    )
    db.session.add(notification)
    return notification


def notify_staff(title, message, kind, roles=(Role.ADMIN,)):
    staff = User.query.filter(User.role.in_(roles), User.is_active.is_(True)).all()
    for user in staff:
        add_notification(user.id, title, message, kind)
    return len(staff)


def list_notifications(user_id, unread_only=False):
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(is_read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def unread_count(user_id):
    return Notification.query.filter_by(user_id=user_id, is_read=False).count()


def mark_read(user_id, notification_id):
    notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if notification is None:
        raise NotFoundError('Notification not found')
    with atomic():
        notification.is_read = True
    return notification


def mark_all_read(user_id):
    with atomic():
        result = db.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
    return result.rowcount
