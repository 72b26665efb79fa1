"""Fee engine: assessment, payment and waiver of fee transactions.

Fees are priced from the active :class:`FeeStructure` of their type.  A new
transaction starts PENDING with a due date ``FEE_GRACE_PERIOD_DAYS`` out and
can only move to PAID or WAIVED, both terminal.  OVERDUE is not written by
the engine; it is derived at read time (``FeeTransaction.effective_status``)
for pending fees past their due date.  A stored OVERDUE (older data) is
treated like PENDING for payment and waiver.
"""

from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, func, or_, update

from .errors import (InvalidStateError, NoActiveFeeStructureError, NotFoundError,
                     ValidationError)
from .extensions import atomic, db
from .inbox import add_notification, notify_staff
from .models import (OPEN_FEE_STATUSES, FeeStatus, FeeStructure, FeeTransaction, FeeType,
                     PaymentRequest, Reservation, User, coerce_enum, utcnow)
from .notifier import EventKind, notify


def _coerce_fee_type(fee_type):
    try:
        return coerce_enum(FeeType, fee_type)
    except ValueError:
        raise ValidationError(f'Unknown fee type: {fee_type}')


def get_transaction(transaction_id):
    transaction = db.session.get(FeeTransaction, transaction_id)
    if transaction is None:
        raise NotFoundError('Fee transaction not found')
    return transaction


def active_fee_structure(fee_type):
    return FeeStructure.query.filter_by(
        fee_type=_coerce_fee_type(fee_type), is_active=True
    ).order_by(FeeStructure.updated_at.desc(), FeeStructure.id.desc()).first()


def stage_fee(user_id, fee_type, reason, reservation_id=None, amount=None):
    """Add a PENDING fee to the current transaction without committing."""
    fee_type = _coerce_fee_type(fee_type)
    structure = active_fee_structure(fee_type)
    if structure is None:
        raise NoActiveFeeStructureError(f'No active fee structure for {fee_type.value}')

    grace_days = current_app.config['FEE_GRACE_PERIOD_DAYS']
    transaction = FeeTransaction(
        user_id=user_id,
        fee_type=fee_type,
        amount=round(structure.amount if amount is None else amount, 2),
        currency=structure.currency,
        reason=reason,
        status=FeeStatus.PENDING,
        due_date=utcnow() + timedelta(days=grace_days),
        reservation_id=reservation_id,
    )
    db.session.add(transaction)
    add_notification(
        user_id,
        'New fee assessed',
        f'A {fee_type.value.replace("_", " ").lower()} fee of '
        f'{transaction.currency} {transaction.amount:.2f} was added: {reason}',
        'fee_assessed',
    )
    return transaction


def _fee_email(transaction, **extra):
    user = transaction.user
    return user.email, dict(
        name=user.name,
        fee_type=transaction.fee_type.value,
        amount=transaction.amount,
        currency=transaction.currency,
        **extra
    )


def send_fee_assessed(transaction):
    return notify(EventKind.FEE_ASSESSED, lambda: _fee_email(
        transaction,
        reason=transaction.reason,
        due_date=transaction.due_date.strftime('%Y-%m-%d'),
    ))


def assess_fee(user_id, fee_type, reason, reservation_id=None, amount=None):
    if db.session.get(User, user_id) is None:
        raise NotFoundError('User not found')
    if reservation_id is not None:
        reservation = db.session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError('Reservation not found')
        if reservation.user_id != user_id:
            raise ValidationError('Reservation does not belong to this user')
    if amount is not None and amount < 0:
        raise ValidationError('Fee amount cannot be negative')

    with atomic():
        transaction = stage_fee(user_id, fee_type, reason, reservation_id, amount)

    current_app.logger.info('Assessed %s fee #%s (%.2f) for user %s',
                            transaction.fee_type.value, transaction.id, transaction.amount, user_id)
    send_fee_assessed(transaction)
    return transaction


def late_return_reason(days_late):
    return f"Book returned {days_late} day{'s' if days_late != 1 else ''} late"


def assess_late_fee(reservation, returned_at):
    """Stage a LATE_RETURN fee for ``reservation``; ``None`` when late fees are switched off."""
    days_late = max((returned_at - reservation.due_date).days, 1)
    try:
        return stage_fee(reservation.user_id, FeeType.LATE_RETURN,
                         late_return_reason(days_late), reservation_id=reservation.id)
    except NoActiveFeeStructureError:
        current_app.logger.warning('Reservation #%s returned late but no LATE_RETURN fee '
                                   'structure is active; no fee assessed', reservation.id)
        return None


def _resolve(transaction_id, new_status, actor_id, **values):
    transaction = get_transaction(transaction_id)
    if transaction.status not in OPEN_FEE_STATUSES:
        raise InvalidStateError(f'Fee transaction is already {transaction.status.value}')

    with atomic():
        result = db.session.execute(
            update(FeeTransaction)
            .where(FeeTransaction.id == transaction.id,
                   FeeTransaction.status.in_(OPEN_FEE_STATUSES))
            .values(status=new_status, resolved_by=actor_id, **values)
        )
        if result.rowcount != 1:
            raise InvalidStateError('Fee transaction was changed by another request')
        add_notification(
            transaction.user_id,
            f'Fee {new_status.value.lower()}',
            f'Your {transaction.fee_type.value.replace("_", " ").lower()} fee of '
            f'{transaction.currency} {transaction.amount:.2f} is now {new_status.value}.',
            'fee_status_changed',
        )

    current_app.logger.info('Fee #%s marked %s by user %s', transaction_id, new_status.value, actor_id)
    notify(EventKind.FEE_STATUS_CHANGED, lambda: _fee_email(transaction, status=new_status.value))
    return transaction


def mark_paid(transaction_id, actor_id=None):
    return _resolve(transaction_id, FeeStatus.PAID, actor_id, paid_date=utcnow())


def waive(transaction_id, actor_id=None):
    return _resolve(transaction_id, FeeStatus.WAIVED, actor_id, waived_at=utcnow())


def _overdue_criteria(now):
    return or_(
        FeeTransaction.status == FeeStatus.OVERDUE,
        and_(FeeTransaction.status == FeeStatus.PENDING, FeeTransaction.due_date < now),
    )


def _status_criteria(status, now):
    status = coerce_enum(FeeStatus, status)
    if status == FeeStatus.OVERDUE:
        return _overdue_criteria(now)
    if status == FeeStatus.PENDING:
        return and_(FeeTransaction.status == FeeStatus.PENDING, FeeTransaction.due_date >= now)
    return FeeTransaction.status == status


def list_transactions(status=None, user_id=None):
    query = FeeTransaction.query
    if user_id is not None:
        query = query.filter(FeeTransaction.user_id == user_id)
    if status:
        try:
            query = query.filter(_status_criteria(status, utcnow()))
        except ValueError:
            raise ValidationError(f'Unknown fee status: {status}')
    return query.order_by(FeeTransaction.created_at.desc(), FeeTransaction.id.desc()).all()


def outstanding_balance(user_id):
    total = db.session.query(func.coalesce(func.sum(FeeTransaction.amount), 0.0)).filter(
        FeeTransaction.user_id == user_id,
        FeeTransaction.status.in_(OPEN_FEE_STATUSES),
    ).scalar()
    return round(float(total), 2)


def fee_statistics():
    now = utcnow()

    def aggregate(*criteria):
        amount, count = db.session.query(
            func.coalesce(func.sum(FeeTransaction.amount), 0.0),
            func.count(FeeTransaction.id),
        ).filter(*criteria).one()
        return round(float(amount), 2), count

    total_amount, total_count = aggregate()
    paid_amount, paid_count = aggregate(FeeTransaction.status == FeeStatus.PAID)
    pending_amount, pending_count = aggregate(_status_criteria(FeeStatus.PENDING, now))
    overdue_amount, overdue_count = aggregate(_overdue_criteria(now))
    waived_amount, waived_count = aggregate(FeeTransaction.status == FeeStatus.WAIVED)

    collection_rate = (paid_count / total_count) * 100 if total_count else 0.0
    return {
        'totalFees': total_amount,
        'totalCount': total_count,
        'paidFees': paid_amount,
        'paidCount': paid_count,
        'pendingFees': pending_amount,
        'pendingCount': pending_count,
        'overdueFees': overdue_amount,
        'overdueCount': overdue_count,
        'waivedFees': waived_amount,
        'waivedCount': waived_count,
        'collectionRate': round(collection_rate, 1),
    }


def request_payment(transaction_id, user_id, message=None):
    """Record a member's claim that a fee has been paid, for staff to confirm."""
    transaction = get_transaction(transaction_id)
    if transaction.user_id != user_id:
        raise NotFoundError('Fee transaction not found')
    if not transaction.is_open:
        raise InvalidStateError(f'Fee transaction is already {transaction.status.value}')

    with atomic():
        payment_request = PaymentRequest(
            transaction_id=transaction.id,
            user_id=user_id,
            message=message or 'Payment request submitted',
        )
        db.session.add(payment_request)
        notify_staff(
            'Payment confirmation requested',
            f'{transaction.user.name} reports payment of fee #{transaction.id} '
            f'({transaction.currency} {transaction.amount:.2f}).',
            'payment_request',
        )
    current_app.logger.info('Payment request #%s submitted for fee #%s', payment_request.id, transaction.id)
    return payment_request


# Fee structures

def list_fee_structures(active_only=False):
    query = FeeStructure.query
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(FeeStructure.fee_type, FeeStructure.id).all()


def _deactivate_others(structure):
    db.session.execute(
        update(FeeStructure)
        .where(FeeStructure.fee_type == structure.fee_type,
               FeeStructure.id != structure.id,
               FeeStructure.is_active.is_(True))
        .values(is_active=False)
    )


def create_fee_structure(fee_type, name, amount, description=None, currency=None, is_active=True):
    if amount < 0:
        raise ValidationError('Fee amount cannot be negative')
    with atomic():
        structure = FeeStructure(
            fee_type=_coerce_fee_type(fee_type),
            name=name,
            description=description,
            amount=round(amount, 2),
            currency=currency or current_app.config['CURRENCY'],
            is_active=is_active,
        )
        db.session.add(structure)
        db.session.flush()
        # At most one active structure per fee type
        if is_active:
            _deactivate_others(structure)
    current_app.logger.info('Created %s fee structure #%s', structure.fee_type.value, structure.id)
    return structure


def update_fee_structure(structure_id, **changes):
    structure = db.session.get(FeeStructure, structure_id)
    if structure is None:
        raise NotFoundError('Fee structure not found')
    if changes.get('amount') is not None and changes['amount'] < 0:
        raise ValidationError('Fee amount cannot be negative')

    with atomic():
        for field in ('name', 'description', 'currency'):
            if changes.get(field) is not None:
                setattr(structure, field, changes[field])
        if changes.get('amount') is not None:
            structure.amount = round(changes['amount'], 2)
        if changes.get('is_active') is not None:
            structure.is_active = changes['is_active']
            if structure.is_active:
                _deactivate_others(structure)
    return structure
