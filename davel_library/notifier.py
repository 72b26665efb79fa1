"""Templated email notifications for reservation, fee and membership events.

The notifier wraps a Flask-Mail ``Mail`` instance built once by
``create_app`` and handed in here; nothing in this module holds a transport
of its own.  Sending is best effort: :meth:`Notifier.notify` logs and returns
``False`` on any failure and never raises, so a broken SMTP server can't roll
back the state change that triggered the email.
"""

import enum
import logging
import re
from dataclasses import dataclass, field

from flask import current_app, render_template
from flask_mail import Message

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r'<[^>]*>')
_BLANK_LINES_RE = re.compile(r'\n\s*\n+')


class EventKind(str, enum.Enum):
    RESERVATION_APPROVED = 'reservation_approved'
    RESERVATION_REJECTED = 'reservation_rejected'
    FEE_ASSESSED = 'fee_assessed'
    FEE_STATUS_CHANGED = 'fee_status_changed'
    APPLICATION_APPROVED = 'application_approved'
    APPLICATION_REJECTED = 'application_rejected'
    APPLICATION_UNDER_REVIEW = 'application_under_review'


SUBJECTS = {
    EventKind.RESERVATION_APPROVED: 'Your reservation has been approved - {library}',
    EventKind.RESERVATION_REJECTED: 'Reservation update - {library}',
    EventKind.FEE_ASSESSED: 'New fee on your account - {library}',
    EventKind.FEE_STATUS_CHANGED: 'Fee status update - {library}',
    EventKind.APPLICATION_APPROVED: 'Welcome to {library} - Membership Approved!',
    EventKind.APPLICATION_REJECTED: 'Membership Application Update - {library}',
    EventKind.APPLICATION_UNDER_REVIEW: 'Membership Application Update - Under Review',
}


@dataclass
class NotificationEvent:
    kind: EventKind
    recipient_email: str
    payload: dict = field(default_factory=dict)


def strip_html(html):
    text = _TAG_RE.sub('', html)
    return _BLANK_LINES_RE.sub('\n\n', text).strip()


class Notifier:

    def __init__(self, mail, sender, enabled=True, library_name='Davel Library', site_url=''):
        self.mail = mail
        self.sender = sender
        self.enabled = enabled
        self.library_name = library_name
        self.site_url = site_url

    @classmethod
    def from_app(cls, app, mail):
        config = app.config
        enabled = bool(config.get('MAIL_USERNAME') and config.get('MAIL_PASSWORD'))
        if not enabled:
            app.logger.warning('Email service not configured; notifications will be skipped.')
        return cls(
            mail,
            sender=config['MAIL_DEFAULT_SENDER'],
            enabled=enabled,
            library_name=config['LIBRARY_NAME'],
            site_url=config['SITE_URL'],
        )

    def build_message(self, event):
        subject = SUBJECTS[event.kind].format(library=self.library_name)
        html = render_template(
            f'email/{event.kind.value}.html',
            subject=subject,
            library_name=self.library_name,
            site_url=self.site_url,
            **event.payload
        )
        return Message(
            subject=subject,
            recipients=[event.recipient_email],
            html=html,
            body=strip_html(html),
            sender=self.sender,
        )

    def notify(self, event):
        if not self.enabled:
            logger.warning('Email service not configured. Skipping %s email to %s.',
                           event.kind.value, event.recipient_email)
            return False
        if not event.recipient_email:
            logger.warning('No recipient for %s email; skipping.', event.kind.value)
            return False

        try:
            message = self.build_message(event)
            self.mail.send(message)
        except Exception:
            logger.exception('Error sending %s email to %s', event.kind.value, event.recipient_email)
            return False

        logger.info('Email %s sent successfully to %s', event.kind.value, event.recipient_email)
        return True


def get_notifier():
    return current_app.extensions['notifier']


def notify(kind, build):
    """Send ``kind`` through the app's notifier.

    ``build()`` returns ``(recipient_email, payload)``.  It runs after the
    triggering transaction has committed, so errors while building the
    email are logged and reported as ``False`` like a failed send.
    """
    try:
        recipient_email, payload = build()
        event = NotificationEvent(kind, recipient_email, payload)
        notifier = get_notifier()
    except Exception:
        logger.exception('Could not prepare %s email', kind.value)
        return False
    return notifier.notify(event)
