"""Reservation lifecycle.

::

    PENDING  --approve--> APPROVED --activate--> ACTIVE --complete--> COMPLETED
    PENDING  --reject---> REJECTED
    ACTIVE   --overdue--> OVERDUE  --complete--> COMPLETED
    PENDING|APPROVED|ACTIVE|OVERDUE --cancel--> CANCELLED

Each transition is a conditional ``UPDATE ... WHERE status = <expected>``;
when no row changes the whole transition is rolled back and
``InvalidStateError`` is raised.  Book copy counts move through guarded
updates (``available_copies > 0`` to take a copy, ``< total_copies`` to
return one), so two activations racing for the last copy cannot both win.

Emails go out only after the transition has committed.
"""

from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from .errors import InvalidStateError, NoCopiesAvailableError, NotFoundError, ValidationError
from .extensions import atomic, db
from .fees import assess_late_fee, send_fee_assessed
from .inbox import add_notification
from .models import (CHECKED_OUT_STATUSES, OPEN_RESERVATION_STATUSES, Book, FeeTransaction,
                     Reservation, ReservationStatus, User, coerce_enum, utcnow)
from .notifier import EventKind, notify

CANCELLABLE_STATUSES = OPEN_RESERVATION_STATUSES

# Names accepted by the generic status endpoint besides the enum values
STATUS_ALIASES = {
    'CHECKED_OUT': ReservationStatus.ACTIVE,
    'RETURNED': ReservationStatus.COMPLETED,
}

DUPLICATE_RESERVATION = 'You already have an active reservation for this book'


def get_reservation(reservation_id):
    reservation = db.session.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError('Reservation not found')
    return reservation


def _require(reservation, allowed, message):
    if reservation.status not in allowed:
        raise InvalidStateError(message)


def _transition(reservation, expected, **values):
    result = db.session.execute(
        update(Reservation)
        .where(Reservation.id == reservation.id, Reservation.status.in_(expected))
        .values(**values)
    )
    if result.rowcount != 1:
        raise InvalidStateError('Reservation was changed by another request')


def _take_copy(book_id):
    result = db.session.execute(
        update(Book)
        .where(Book.id == book_id, Book.available_copies > 0)
        .values(available_copies=Book.available_copies - 1)
    )
    if result.rowcount != 1:
        raise NoCopiesAvailableError('No copies of this book are available')


def _return_copy(book_id):
    result = db.session.execute(
        update(Book)
        .where(Book.id == book_id, Book.available_copies < Book.total_copies)
        .values(available_copies=Book.available_copies + 1)
    )
    if result.rowcount != 1:
        raise InvalidStateError('All copies of this book are already on the shelf')


def set_total_copies(book_id, total_copies):
    """Change a book's total copies, moving the shelf count by the same amount.

    Copies off the shelf stay off it; the update fails when the new total
    would leave fewer copies than are currently borrowed.  Runs in the
    caller's transaction.
    """
    delta = total_copies - Book.total_copies
    result = db.session.execute(
        update(Book)
        .where(Book.id == book_id, Book.available_copies + delta >= 0)
        # available_copies first: MySQL evaluates SET clauses left to right
        .ordered_values(
            (Book.available_copies, Book.available_copies + delta),
            (Book.total_copies, total_copies),
        )
    )
    if result.rowcount != 1:
        raise ValidationError('Cannot reduce total copies below the number currently borrowed')


def _as_due_datetime(value):
    if value is None:
        return utcnow() + timedelta(days=current_app.config['LOAN_PERIOD_DAYS'])
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time(23, 59, 59))
    raise ValidationError('Invalid due date')


def create_reservation(user_id, book_id, notes=None):
    book = db.session.get(Book, book_id)
    if book is None:
        raise NotFoundError('Book not found')
    if db.session.get(User, user_id) is None:
        raise NotFoundError('User not found')

    existing = Reservation.query.filter(
        Reservation.user_id == user_id,
        Reservation.book_id == book_id,
        Reservation.status.in_(OPEN_RESERVATION_STATUSES),
    ).first()
    if existing:
        raise InvalidStateError(DUPLICATE_RESERVATION)

    try:
        with atomic():
            reservation = Reservation(user_id=user_id, book_id=book_id, notes=notes,
                                      status=ReservationStatus.PENDING)
            db.session.add(reservation)
    except IntegrityError:
        raise InvalidStateError(DUPLICATE_RESERVATION)

    current_app.logger.info('User %s reserved book %s (reservation #%s)', user_id, book_id, reservation.id)
    return reservation


def _member_email(reservation, **extra):
    user = reservation.user
    return user.email, dict(name=user.name, book_title=reservation.book.title, **extra)


def approve(reservation_id, actor_id=None):
    reservation = get_reservation(reservation_id)
    _require(reservation, (ReservationStatus.PENDING,), 'Reservation is not pending approval')

    with atomic():
        _transition(reservation, (ReservationStatus.PENDING,),
                    status=ReservationStatus.APPROVED, approved_at=utcnow(), approved_by=actor_id)
        add_notification(reservation.user_id, 'Reservation approved',
                         f'Your reservation for "{reservation.book.title}" has been approved.',
                         'reservation_approved')

    current_app.logger.info('Reservation #%s approved by user %s', reservation_id, actor_id)
    notify(EventKind.RESERVATION_APPROVED,
           lambda: _member_email(reservation, reservation_id=reservation_id))
    return reservation


def reject(reservation_id, actor_id=None, notes=None):
    reservation = get_reservation(reservation_id)
    _require(reservation, (ReservationStatus.PENDING,), 'Reservation is not pending approval')

    values = {'status': ReservationStatus.REJECTED, 'approved_by': actor_id}
    if notes:
        values['notes'] = notes
    with atomic():
        _transition(reservation, (ReservationStatus.PENDING,), **values)
        add_notification(reservation.user_id, 'Reservation rejected',
                         f'Your reservation for "{reservation.book.title}" was not approved.',
                         'reservation_rejected')

    current_app.logger.info('Reservation #%s rejected by user %s', reservation_id, actor_id)
    notify(EventKind.RESERVATION_REJECTED, lambda: _member_email(reservation, notes=notes))
    return reservation


def activate(reservation_id, due_date=None):
    """Hand the copy over: APPROVED -> ACTIVE, one fewer copy on the shelf."""
    reservation = get_reservation(reservation_id)
    _require(reservation, (ReservationStatus.APPROVED,), 'Only approved reservations can be checked out')

    due = _as_due_datetime(due_date)
    if due <= utcnow():
        raise ValidationError('Due date must be in the future')

    with atomic():
        _transition(reservation, (ReservationStatus.APPROVED,),
                    status=ReservationStatus.ACTIVE, due_date=due)
        _take_copy(reservation.book_id)

    current_app.logger.info('Reservation #%s checked out, due %s', reservation.id, due.isoformat())
    return reservation


def complete(reservation_id):
    """Take the copy back: ACTIVE/OVERDUE -> COMPLETED, charging a late fee if it was overdue."""
    reservation = get_reservation(reservation_id)
    _require(reservation, CHECKED_OUT_STATUSES, 'Only checked out reservations can be returned')

    was_overdue = reservation.status == ReservationStatus.OVERDUE or reservation.is_overdue
    returned_at = utcnow()
    fee = None
    with atomic():
        _transition(reservation, CHECKED_OUT_STATUSES,
                    status=ReservationStatus.COMPLETED, returned_at=returned_at)
        _return_copy(reservation.book_id)
        if was_overdue:
            fee = assess_late_fee(reservation, returned_at)

    current_app.logger.info('Reservation #%s returned%s', reservation.id, ' late' if was_overdue else '')
    if fee is not None:
        send_fee_assessed(fee)
    return reservation


def mark_overdue(reservation_id):
    reservation = get_reservation(reservation_id)
    _require(reservation, (ReservationStatus.ACTIVE,), 'Only checked out reservations can become overdue')
    if not reservation.is_overdue:
        raise InvalidStateError('Reservation is not past its due date')

    with atomic():
        _transition(reservation, (ReservationStatus.ACTIVE,), status=ReservationStatus.OVERDUE)
        _add_overdue_notice(reservation)

    current_app.logger.info('Reservation #%s marked overdue', reservation.id)
    return reservation


def _add_overdue_notice(reservation):
    add_notification(reservation.user_id, 'Book overdue',
                     f'"{reservation.book.title}" was due on '
                     f'{reservation.due_date.strftime("%Y-%m-%d")}. Please return it to avoid a late fee.',
                     'reservation_overdue')


def cancel(reservation_id):
    reservation = get_reservation(reservation_id)
    _require(reservation, CANCELLABLE_STATUSES, 'Reservation can no longer be cancelled')

    previous = reservation.status
    with atomic():
        _transition(reservation, (previous,), status=ReservationStatus.CANCELLED)
        if previous in CHECKED_OUT_STATUSES:
            _return_copy(reservation.book_id)

    current_app.logger.info('Reservation #%s cancelled (was %s)', reservation.id, previous.value)
    return reservation


def delete_reservation(reservation_id):
    reservation = get_reservation(reservation_id)
    _require(reservation, (ReservationStatus.CANCELLED,), 'Only cancelled reservations can be deleted')

    with atomic():
        db.session.execute(
            update(FeeTransaction)
            .where(FeeTransaction.reservation_id == reservation.id)
            .values(reservation_id=None)
        )
        result = db.session.execute(
            delete(Reservation)
            .where(Reservation.id == reservation.id,
                   Reservation.status == ReservationStatus.CANCELLED)
            .execution_options(synchronize_session='fetch')
        )
        if result.rowcount != 1:
            raise InvalidStateError('Reservation was changed by another request')

    current_app.logger.info('Reservation #%s deleted', reservation_id)


def update_status(reservation_id, status, actor_id=None, due_date=None, notes=None):
    """Apply the single transition that leads to ``status``."""
    if isinstance(status, ReservationStatus):
        status = status.value
    status = str(status).strip().upper()
    try:
        target = STATUS_ALIASES.get(status) or ReservationStatus(status)
    except ValueError:
        raise ValidationError('Invalid status')

    if target == ReservationStatus.APPROVED:
        return approve(reservation_id, actor_id)
    if target == ReservationStatus.REJECTED:
        return reject(reservation_id, actor_id, notes)
    if target == ReservationStatus.ACTIVE:
        return activate(reservation_id, due_date)
    if target == ReservationStatus.COMPLETED:
        return complete(reservation_id)
    if target == ReservationStatus.OVERDUE:
        return mark_overdue(reservation_id)
    if target == ReservationStatus.CANCELLED:
        return cancel(reservation_id)
    raise InvalidStateError(f'Reservations cannot be moved back to {target.value}')


def sweep_overdue(now=None):
    """Move every checked-out reservation past its due date to OVERDUE."""
    now = now or utcnow()
    candidates = Reservation.query.filter(
        Reservation.status == ReservationStatus.ACTIVE,
        Reservation.due_date < now,
    ).all()

    marked = 0
    with atomic():
        for reservation in candidates:
            result = db.session.execute(
                update(Reservation)
                .where(Reservation.id == reservation.id,
                       Reservation.status == ReservationStatus.ACTIVE)
                .values(status=ReservationStatus.OVERDUE)
            )
            if result.rowcount == 1:
                _add_overdue_notice(reservation)
                marked += 1

    if marked:
        current_app.logger.info('Marked %s reservation(s) overdue', marked)
    return marked


def list_reservations(status=None, user_id=None):
    query = Reservation.query
    if user_id is not None:
        query = query.filter(Reservation.user_id == user_id)
    if status:
        try:
            query = query.filter(Reservation.status == coerce_enum(ReservationStatus, status))
        except ValueError:
            raise ValidationError('Invalid status')
    return query.order_by(Reservation.reserved_at.desc(), Reservation.id.desc()).all()
