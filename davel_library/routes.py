from functools import wraps

from flask import Blueprint, current_app, jsonify, make_response, request
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy import func
from werkzeug.security import check_password_hash

from . import applications, fees, inbox, reservations
from .errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .extensions import atomic, db
from .forms import (ApplicationReviewForm, BookForm, FeeForm, FeeStructureForm,
                    FeeStructureUpdateForm, LoginForm, MembershipApplicationForm,
                    PaymentRequestForm, RejectReservationForm, ReservationRequestForm,
                    ReservationStatusForm)
from .models import (CHECKED_OUT_STATUSES, OPEN_FEE_STATUSES, OPEN_RESERVATION_STATUSES, STAFF_ROLES,
                     ApplicationStatus, Book, FeeTransaction, Reservation, ReservationStatus,
                     Role, User)
from .slips import render_fee_slip, slip_number

bp = Blueprint('library', __name__)


def roles_required(*roles):
    def decorator(view):
        @wraps(view)
        @login_required
        def wrapped(*args, **kwargs):
            if not current_user.has_role(*roles):
                raise AuthorizationError()
            return view(*args, **kwargs)
        return wrapped
    return decorator


staff_required = roles_required(*STAFF_ROLES)
admin_required = roles_required(Role.ADMIN)


def validated(form_cls):
    form = form_cls()
    if not form.validate():
        raise ValidationError('Invalid request data', form.errors)
    return form


def _get_book(book_id):
    book = db.session.get(Book, book_id)
    if book is None:
        raise NotFoundError('Book not found')
    return book


# Auth

@bp.route('/auth/login', methods=['POST'])
def login():
    form = validated(LoginForm)
    user = User.query.filter_by(email=form.email.data.strip().lower()).first()
    if not user or not check_password_hash(user.password_hash, form.password.data):
        raise AuthorizationError('Invalid email or password')
    if not login_user(user):
        raise AuthorizationError('Account is disabled')
    current_app.logger.info('User %s logged in', user.id)
    return jsonify({'success': True, 'user': user.to_dict()})


@bp.route('/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})


@bp.route('/auth/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})


# Catalog

@bp.route('/books')
def list_books():
    search_query = request.args.get('search', '')
    category_filter = request.args.get('category', '')

    query = Book.query
    if search_query:
        query = query.filter(Book.title.ilike(f'%{search_query}%') | Book.author.ilike(f'%{search_query}%'))
    if category_filter:
        query = query.filter(Book.category == category_filter)
    if request.args.get('available') == 'true':
        query = query.filter(Book.available_copies > 0)

    books = query.order_by(Book.title).all()
    return jsonify({'books': [book.to_dict() for book in books]})


@bp.route('/books/<int:book_id>')
def get_book(book_id):
    return jsonify({'book': _get_book(book_id).to_dict()})


@bp.route('/books', methods=['POST'])
@staff_required
def add_book():
    form = validated(BookForm)
    if form.isbn.data and Book.query.filter_by(isbn=form.isbn.data).first():
        raise ValidationError(f'A book with ISBN "{form.isbn.data}" already exists')

    with atomic():
        book = Book(
            title=form.title.data,
            author=form.author.data,
            isbn=form.isbn.data or None,
            category=form.category.data or None,
            description=form.description.data or None,
            total_copies=form.total_copies.data,
            # Initially all copies are available
            available_copies=form.total_copies.data,
        )
        db.session.add(book)
    current_app.logger.info('Book #%s added by user %s', book.id, current_user.id)
    return jsonify({'success': True, 'message': 'Book added successfully', 'book': book.to_dict()}), 201


@bp.route('/books/<int:book_id>', methods=['PUT'])
@staff_required
def edit_book(book_id):
    book = _get_book(book_id)
    form = validated(BookForm)
    if form.isbn.data and Book.query.filter(Book.isbn == form.isbn.data, Book.id != book.id).first():
        raise ValidationError(f'A book with ISBN "{form.isbn.data}" already exists')

    with atomic():
        book.title = form.title.data
        book.author = form.author.data
        book.isbn = form.isbn.data or None
        book.category = form.category.data or None
        book.description = form.description.data or None
        db.session.flush()
        # Copies currently out cannot disappear from the total
        reservations.set_total_copies(book.id, form.total_copies.data)
    return jsonify({'success': True, 'message': 'Book updated successfully', 'book': book.to_dict()})


@bp.route('/books/<int:book_id>', methods=['DELETE'])
@staff_required
def delete_book(book_id):
    book = _get_book(book_id)
    open_count = Reservation.query.filter(
        Reservation.book_id == book.id,
        Reservation.status.in_(OPEN_RESERVATION_STATUSES),
    ).count()
    if open_count:
        raise InvalidStateError(f'Cannot delete book with {open_count} open reservation(s)')
    if Reservation.query.filter_by(book_id=book.id).count():
        raise InvalidStateError('Cannot delete a book with reservation history')

    with atomic():
        db.session.delete(book)
    return jsonify({'success': True, 'message': 'Book deleted successfully'})


@bp.route('/books/<int:book_id>/reserve', methods=['POST'])
@roles_required(Role.MEMBER)
def reserve_book(book_id):
    form = validated(ReservationRequestForm)
    reservation = reservations.create_reservation(current_user.id, book_id, form.notes.data or None)
    return jsonify({'success': True, 'message': 'Book reserved successfully',
                    'reservation': reservation.to_dict()}), 201


# Reservations

@bp.route('/reservations')
@staff_required
def list_reservations():
    reservations.sweep_overdue()
    items = reservations.list_reservations(status=request.args.get('status'))
    return jsonify({'reservations': [item.to_dict() for item in items]})


@bp.route('/user/reservations')
@login_required
def my_reservations():
    items = reservations.list_reservations(user_id=current_user.id)
    return jsonify({'reservations': [item.to_dict() for item in items]})


@bp.route('/reservations/<int:reservation_id>/approve', methods=['POST'])
@staff_required
def approve_reservation(reservation_id):
    reservation = reservations.approve(reservation_id, actor_id=current_user.id)
    return jsonify({'success': True, 'message': 'Reservation approved successfully',
                    'reservation': reservation.to_dict()})


@bp.route('/reservations/<int:reservation_id>/reject', methods=['POST'])
@staff_required
def reject_reservation(reservation_id):
    form = validated(RejectReservationForm)
    reservation = reservations.reject(reservation_id, actor_id=current_user.id, notes=form.notes.data or None)
    return jsonify({'success': True, 'message': 'Reservation rejected successfully',
                    'reservation': reservation.to_dict()})


@bp.route('/reservations/<int:reservation_id>', methods=['PUT', 'PATCH'])
@staff_required
def update_reservation(reservation_id):
    form = validated(ReservationStatusForm)
    reservation = reservations.update_status(
        reservation_id,
        form.status.data,
        actor_id=current_user.id,
        due_date=form.due_date.data,
        notes=form.notes.data or None,
    )
    return jsonify({'success': True,
                    'message': f'Reservation {reservation.status.value.lower()} successfully',
                    'reservation': reservation.to_dict()})


@bp.route('/reservations/<int:reservation_id>/cancel', methods=['POST'])
@login_required
def cancel_reservation(reservation_id):
    reservation = reservations.get_reservation(reservation_id)
    if not current_user.is_staff:
        if reservation.user_id != current_user.id:
            raise NotFoundError('Reservation not found')
        if reservation.status in CHECKED_OUT_STATUSES:
            raise InvalidStateError('Checked out books must be returned at the front desk')
    reservation = reservations.cancel(reservation_id)
    return jsonify({'success': True, 'message': 'Reservation cancelled successfully',
                    'reservation': reservation.to_dict()})


@bp.route('/reservations/<int:reservation_id>', methods=['DELETE'])
@admin_required
def delete_reservation(reservation_id):
    reservations.delete_reservation(reservation_id)
    return jsonify({'success': True, 'message': 'Reservation deleted successfully'})


# Fees

@bp.route('/fees')
@staff_required
def list_fees():
    status = request.args.get('status')
    user_id = request.args.get('user_id', type=int)
    transactions = fees.list_transactions(status=status.upper() if status else None, user_id=user_id)
    return jsonify({
        'fees': [transaction.to_dict() for transaction in transactions],
        'statistics': fees.fee_statistics(),
    })


@bp.route('/fees', methods=['POST'])
@staff_required
def assess_fee():
    form = validated(FeeForm)
    transaction = fees.assess_fee(
        form.user_id.data,
        form.fee_type.data,
        form.reason.data,
        reservation_id=form.reservation_id.data,
        amount=form.amount.data,
    )
    return jsonify({'success': True, 'fee': transaction.to_dict()}), 201


@bp.route('/fees/<int:transaction_id>/approve', methods=['POST'])
@staff_required
def approve_payment(transaction_id):
    transaction = fees.mark_paid(transaction_id, actor_id=current_user.id)
    return jsonify({'success': True, 'message': 'Fee marked as paid', 'fee': transaction.to_dict()})


@bp.route('/fees/<int:transaction_id>/waive', methods=['POST'])
@staff_required
def waive_fee(transaction_id):
    transaction = fees.waive(transaction_id, actor_id=current_user.id)
    return jsonify({'success': True, 'message': 'Fee waived', 'fee': transaction.to_dict()})


@bp.route('/fees/<int:transaction_id>/slip')
@login_required
def fee_slip(transaction_id):
    transaction = fees.get_transaction(transaction_id)
    if not current_user.is_staff and transaction.user_id != current_user.id:
        raise NotFoundError('Fee transaction not found')

    pdf = render_fee_slip(transaction, library_name=current_app.config['LIBRARY_NAME'])
    response = make_response(pdf)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'attachment; filename={slip_number(transaction)}.pdf'
    return response


@bp.route('/fees/structures')
@staff_required
def list_fee_structures():
    structures = fees.list_fee_structures(active_only=request.args.get('active') == 'true')
    return jsonify({'structures': [structure.to_dict() for structure in structures]})


@bp.route('/fees/structures', methods=['POST'])
@admin_required
def create_fee_structure():
    form = validated(FeeStructureForm)
    structure = fees.create_fee_structure(
        form.fee_type.data,
        form.name.data,
        form.amount.data,
        description=form.description.data or None,
        currency=form.currency.data or None,
        is_active=form.is_active.data if form.is_active.raw_data else True,
    )
    return jsonify({'success': True, 'structure': structure.to_dict()}), 201


@bp.route('/fees/structures/<int:structure_id>', methods=['PUT', 'PATCH'])
@admin_required
def update_fee_structure(structure_id):
    form = validated(FeeStructureUpdateForm)
    structure = fees.update_fee_structure(
        structure_id,
        name=form.name.data or None,
        description=form.description.data or None,
        amount=form.amount.data,
        currency=form.currency.data or None,
        is_active=form.is_active.data if form.is_active.raw_data else None,
    )
    return jsonify({'success': True, 'structure': structure.to_dict()})


@bp.route('/user/fees')
@login_required
def my_fees():
    transactions = fees.list_transactions(user_id=current_user.id)
    return jsonify({
        'fees': [transaction.to_dict() for transaction in transactions],
        'outstanding': fees.outstanding_balance(current_user.id),
    })


@bp.route('/user/fees/<int:transaction_id>/payment-request', methods=['POST'])
@login_required
def request_fee_payment(transaction_id):
    form = validated(PaymentRequestForm)
    payment_request = fees.request_payment(transaction_id, current_user.id, form.message.data or None)
    return jsonify({'success': True, 'paymentRequest': payment_request.to_dict()}), 201


# Notifications

@bp.route('/notifications')
@login_required
def notifications():
    items = inbox.list_notifications(current_user.id, unread_only=request.args.get('unread') == 'true')
    return jsonify({
        'notifications': [item.to_dict() for item in items],
        'unreadCount': inbox.unread_count(current_user.id),
    })


@bp.route('/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    inbox.mark_read(current_user.id, notification_id)
    return jsonify({'success': True})


@bp.route('/notifications/read-all', methods=['POST'])
@login_required
def mark_all_notifications_read():
    count = inbox.mark_all_read(current_user.id)
    return jsonify({'success': True, 'updated': count})


# Membership

@bp.route('/membership/apply', methods=['POST'])
def apply_for_membership():
    form = validated(MembershipApplicationForm)
    application = applications.submit_application(
        form.first_name.data,
        form.last_name.data,
        form.email.data,
        form.phone.data,
        form.address.data,
    )
    return jsonify({'success': True, 'message': 'Application submitted successfully',
                    'application': {'id': application.id, 'status': application.status.value}}), 201


@bp.route('/membership/status')
def membership_status():
    email = request.args.get('email', '').strip()
    if not email:
        raise ValidationError('Email is required')
    application = applications.application_status(email)
    return jsonify({'status': application.status.value,
                    'submittedAt': application.created_at.isoformat(),
                    'reviewedAt': application.reviewed_at.isoformat() if application.reviewed_at else None})


@bp.route('/admin/applications')
@admin_required
def list_applications():
    items = applications.list_applications(status=request.args.get('status'))
    return jsonify({'applications': [item.to_dict() for item in items]})


@bp.route('/admin/applications/<int:application_id>', methods=['PATCH', 'PUT'])
@admin_required
def review_application(application_id):
    form = validated(ApplicationReviewForm)
    application = applications.review_application(
        application_id,
        form.status.data,
        reviewer_id=current_user.id,
        notes=form.review_notes.data or None,
    )
    return jsonify({'success': True, 'message': 'Application updated successfully',
                    'application': application.to_dict()})


# Dashboard

@bp.route('/dashboard')
@login_required
def dashboard():
    reservations.sweep_overdue()

    if current_user.role == Role.MEMBER:
        mine = reservations.list_reservations(user_id=current_user.id)
        open_fees = [fee for fee in fees.list_transactions(user_id=current_user.id) if fee.is_open]
        return jsonify({
            'title': 'Member Dashboard',
            'activeReservations': [r.to_dict() for r in mine if r.status in OPEN_RESERVATION_STATUSES],
            'recentReservations': [r.to_dict() for r in mine[:5]],
            'pendingFees': [fee.to_dict() for fee in open_fees],
            'outstanding': fees.outstanding_balance(current_user.id),
            'unreadNotifications': inbox.unread_count(current_user.id),
        })

    def count_status(*statuses):
        return db.session.query(func.count(Reservation.id)).filter(
            Reservation.status.in_(statuses)).scalar()

    recent = Reservation.query.order_by(Reservation.reserved_at.desc()).limit(5).all()
    data = {
        'title': 'Librarian Dashboard' if current_user.role == Role.LIBRARIAN else 'Admin Dashboard',
        'totalBooks': db.session.query(func.count(Book.id)).scalar(),
        'totalMembers': User.query.filter_by(role=Role.MEMBER).count(),
        'pendingReservations': count_status(ReservationStatus.PENDING),
        'activeReservations': count_status(ReservationStatus.ACTIVE),
        'overdueReservations': count_status(ReservationStatus.OVERDUE),
        'openFees': db.session.query(func.count(FeeTransaction.id)).filter(
            FeeTransaction.status.in_(OPEN_FEE_STATUSES)).scalar(),
        'recentReservations': [r.to_dict() for r in recent],
    }
    if current_user.role == Role.ADMIN:
        data['feeStatistics'] = fees.fee_statistics()
        data['pendingApplications'] = len(applications.list_applications(ApplicationStatus.PENDING))
    return jsonify(data)
