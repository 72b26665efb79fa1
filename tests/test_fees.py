from datetime import timedelta

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from davel_library import fees
from davel_library.errors import (InvalidStateError, NoActiveFeeStructureError, NotFoundError,
                                  ValidationError)
from davel_library.extensions import db
from davel_library.models import (FeeStatus, FeeStructure, FeeTransaction, FeeType, Notification,
                                  PaymentRequest, utcnow)
from davel_library.slips import render_fee_slip, slip_number


def test_assess_fee_prices_from_active_structure(app, ctx, make_member):
    member = make_member()

    fee = fees.assess_fee(member.id, 'LATE_RETURN', 'Book returned 2 days late')

    assert fee.amount == 5.00
    assert fee.currency == 'ZAR'
    assert fee.paid_date is None
    assert fee.status == FeeStatus.PENDING
    expected_due = utcnow() + timedelta(days=app.config['FEE_GRACE_PERIOD_DAYS'])
    assert abs((fee.due_date - expected_due).total_seconds()) < 60
    assert Notification.query.filter_by(user_id=member.id, notification_type='fee_assessed').count() == 1


def test_assess_fee_with_explicit_amount(ctx, make_member):
    fee = fees.assess_fee(make_member().id, FeeType.DAMAGE, 'Water damage', amount=12.5)

    assert fee.amount == 12.5


def test_assess_fee_without_active_structure(ctx, make_member):
    structure = fees.active_fee_structure(FeeType.DAMAGE)
    fees.update_fee_structure(structure.id, is_active=False)

    with pytest.raises(NoActiveFeeStructureError):
        fees.assess_fee(make_member().id, FeeType.DAMAGE, 'Torn cover')
    assert FeeTransaction.query.count() == 0


def test_assess_fee_validation(ctx, make_member, make_reservation):
    member = make_member()
    with pytest.raises(ValidationError):
        fees.assess_fee(member.id, 'PARKING', 'Not a library fee')
    with pytest.raises(ValidationError):
        fees.assess_fee(member.id, FeeType.DAMAGE, 'Negative', amount=-1)
    with pytest.raises(NotFoundError):
        fees.assess_fee(999, FeeType.DAMAGE, 'Nobody')
    with pytest.raises(ValidationError):
        fees.assess_fee(member.id, FeeType.DAMAGE, 'Someone else', reservation_id=make_reservation().id)


def test_mark_paid_is_terminal(ctx, make_member, admin_id):
    fee = fees.assess_fee(make_member().id, FeeType.PROCESSING, 'Card replacement')

    fee = fees.mark_paid(fee.id, actor_id=admin_id)
    assert fee.status == FeeStatus.PAID
    assert fee.paid_date is not None
    assert fee.resolved_by == admin_id

    with pytest.raises(InvalidStateError):
        fees.waive(fee.id)
    assert db.session.get(FeeTransaction, fee.id).status == FeeStatus.PAID


def test_waived_fee_cannot_be_paid(ctx, make_member):
    fee = fees.assess_fee(make_member().id, FeeType.LOST_BOOK, 'Lost on the bus')
    fees.waive(fee.id)

    with pytest.raises(InvalidStateError):
        fees.mark_paid(fee.id)
    fee = db.session.get(FeeTransaction, fee.id)
    assert fee.status == FeeStatus.WAIVED
    assert fee.paid_date is None


def test_mark_paid_after_concurrent_waiver_changes_nothing(ctx, make_member):
    fee = fees.assess_fee(make_member().id, FeeType.LOST_BOOK, 'Lost on the bus')
    fees.waive(fee.id)
    # This session still holds the fee as it was before the waiver
    db.session.refresh(fee)
    set_committed_value(fee, 'status', FeeStatus.PENDING)

    with pytest.raises(InvalidStateError):
        fees.mark_paid(fee.id)

    fee = db.session.get(FeeTransaction, fee.id)
    assert fee.status == FeeStatus.WAIVED
    assert fee.paid_date is None
    assert Notification.query.filter_by(user_id=fee.user_id, notification_type='fee_status_changed').count() == 1


def test_pending_fee_past_due_reads_as_overdue(ctx, make_member):
    fee = fees.assess_fee(make_member().id, FeeType.MEMBERSHIP, 'Annual membership')
    fee.due_date = utcnow() - timedelta(days=1)
    db.session.commit()

    assert fee.status == FeeStatus.PENDING
    assert fee.effective_status == FeeStatus.OVERDUE
    assert fee.to_dict()['status'] == 'OVERDUE'
    assert [f.id for f in fees.list_transactions(status='OVERDUE')] == [fee.id]
    assert fees.list_transactions(status='PENDING') == []

    fee = fees.mark_paid(fee.id)
    assert fee.effective_status == FeeStatus.PAID


def test_fee_statistics(ctx, make_member):
    member = make_member()
    paid = fees.assess_fee(member.id, FeeType.PROCESSING, 'Processing')
    waived = fees.assess_fee(member.id, FeeType.LATE_RETURN, 'Late')
    fees.assess_fee(member.id, FeeType.DAMAGE, 'Damage')
    fees.mark_paid(paid.id)
    fees.waive(waived.id)

    stats = fees.fee_statistics()

    assert stats['totalCount'] == 3
    assert stats['totalFees'] == 50.00
    assert stats['paidFees'] == 20.00
    assert stats['waivedFees'] == 5.00
    assert stats['pendingFees'] == 25.00
    assert stats['overdueCount'] == 0
    assert stats['collectionRate'] == 33.3


def test_outstanding_balance_counts_open_fees_only(ctx, make_member):
    member = make_member()
    fees.assess_fee(member.id, FeeType.DAMAGE, 'Damage')
    paid = fees.assess_fee(member.id, FeeType.PROCESSING, 'Processing')
    fees.mark_paid(paid.id)

    assert fees.outstanding_balance(member.id) == 25.00


def test_request_payment(ctx, make_member, admin_id):
    member = make_member()
    fee = fees.assess_fee(member.id, FeeType.DAMAGE, 'Damage')

    with pytest.raises(NotFoundError):
        fees.request_payment(fee.id, make_member().id)

    payment_request = fees.request_payment(fee.id, member.id, 'Paid by EFT')
    assert payment_request.message == 'Paid by EFT'
    assert PaymentRequest.query.count() == 1
    assert Notification.query.filter_by(user_id=admin_id, notification_type='payment_request').count() == 1

    fees.mark_paid(fee.id)
    with pytest.raises(InvalidStateError):
        fees.request_payment(fee.id, member.id)


def test_new_active_structure_replaces_previous(ctx):
    old = fees.active_fee_structure(FeeType.LATE_RETURN)

    new = fees.create_fee_structure(FeeType.LATE_RETURN, 'Late Return Fee 2026', 7.5)

    assert fees.active_fee_structure(FeeType.LATE_RETURN).id == new.id
    assert db.session.get(FeeStructure, old.id).is_active is False
    assert new.currency == 'ZAR'


def test_create_fee_structure_rejects_negative_amount(ctx):
    with pytest.raises(ValidationError):
        fees.create_fee_structure(FeeType.DAMAGE, 'Refund', -5)


def test_fee_slip_pdf(ctx, make_member, make_reservation):
    member = make_member(name='Thandi <Nkosi>')
    reservation = make_reservation(user=member)
    fee = fees.assess_fee(member.id, FeeType.DAMAGE, 'Spine & cover damaged', reservation_id=reservation.id)

    pdf = render_fee_slip(fee, library_name='Davel Library')

    assert pdf.startswith(b'%PDF')
    assert slip_number(fee) == f'FEE-{fee.id:06d}'
