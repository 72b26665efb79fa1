import secrets

from flask import current_app
from werkzeug.security import generate_password_hash

from .errors import InvalidStateError, NotFoundError, ValidationError
from .extensions import atomic, db
from .inbox import notify_staff
from .models import ApplicationStatus, MembershipApplication, Role, User, coerce_enum, utcnow
from .notifier import EventKind, notify

OPEN_APPLICATION_STATUSES = (ApplicationStatus.PENDING, ApplicationStatus.UNDER_REVIEW)

STATUS_EVENTS = {
    ApplicationStatus.APPROVED: EventKind.APPLICATION_APPROVED,
    ApplicationStatus.REJECTED: EventKind.APPLICATION_REJECTED,
    ApplicationStatus.UNDER_REVIEW: EventKind.APPLICATION_UNDER_REVIEW,
}


def get_application(application_id):
    application = db.session.get(MembershipApplication, application_id)
    if application is None:
        raise NotFoundError('Application not found')
    return application


def submit_application(first_name, last_name, email, phone, address):
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        raise InvalidStateError('A member account already exists for this email')
    pending = MembershipApplication.query.filter(
        MembershipApplication.email == email,
        MembershipApplication.status.in_(OPEN_APPLICATION_STATUSES),
    ).first()
    if pending:
        raise InvalidStateError('An application for this email is already being processed')

    with atomic():
        application = MembershipApplication(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            address=address,
            status=ApplicationStatus.PENDING,
        )
        db.session.add(application)
        db.session.flush()
        notify_staff('New membership application',
                     f'{application.full_name} ({email}) applied for membership.',
                     'membership_application')

    current_app.logger.info('Membership application #%s submitted for %s', application.id, email)
    return application


def latest_application(email):
    return MembershipApplication.query.filter_by(email=email.strip().lower()).order_by(
        MembershipApplication.created_at.desc(), MembershipApplication.id.desc()
    ).first()


def list_applications(status=None):
    query = MembershipApplication.query
    if status:
        try:
            query = query.filter_by(status=coerce_enum(ApplicationStatus, status))
        except ValueError:
            raise ValidationError('Invalid status')
    return query.order_by(MembershipApplication.created_at.desc()).all()


def _create_member_account(application):
    temporary_password = secrets.token_urlsafe(8)
    user = User(
        email=application.email,
        name=application.full_name,
        phone=application.phone,
        password_hash=generate_password_hash(temporary_password),
        role=Role.MEMBER,
    )
    db.session.add(user)
    db.session.flush()
    return user, temporary_password


def review_application(application_id, status, reviewer_id=None, notes=None):
    """Record a review decision and email the applicant when the status changes.

    Approval creates the member account (with a temporary password) unless one
    already exists for the applicant's email.
    """
    application = get_application(application_id)
    try:
        status = coerce_enum(ApplicationStatus, status)
    except ValueError:
        raise ValidationError('Invalid status')

    previous = application.status
    if previous == ApplicationStatus.APPROVED and status != ApplicationStatus.APPROVED:
        raise InvalidStateError('Approved applications cannot be changed')

    temporary_password = None
    with atomic():
        application.status = status
        application.review_notes = notes
        application.reviewed_by = reviewer_id
        application.reviewed_at = utcnow()
        if status == ApplicationStatus.APPROVED and previous != ApplicationStatus.APPROVED:
            user = User.query.filter_by(email=application.email).first()
            if user is None:
                user, temporary_password = _create_member_account(application)
            application.user_id = user.id

    current_app.logger.info('Application #%s reviewed: %s -> %s', application_id, previous.value, status.value)
    if status != previous and status in STATUS_EVENTS:
        notify(STATUS_EVENTS[status], lambda: (application.email, {
            'name': application.full_name,
            'email': application.email,
            'notes': notes,
            'temporary_password': temporary_password,
        }))
    return application


def application_status(email):
    application = latest_application(email)
    if application is None:
        raise NotFoundError('No application found for this email')
    return application
