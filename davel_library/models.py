import enum
from datetime import datetime, timezone

from flask_login import UserMixin
from sqlalchemy import text

from .extensions import db


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    ADMIN = 'ADMIN'
    LIBRARIAN = 'LIBRARIAN'
    MEMBER = 'MEMBER'


STAFF_ROLES = (Role.ADMIN, Role.LIBRARIAN)


class ReservationStatus(str, enum.Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    OVERDUE = 'OVERDUE'
    CANCELLED = 'CANCELLED'


# A member may hold at most one of these per book
OPEN_RESERVATION_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.APPROVED,
    ReservationStatus.ACTIVE,
    ReservationStatus.OVERDUE,
)

# The copy is off the shelf while the reservation sits in one of these
CHECKED_OUT_STATUSES = (ReservationStatus.ACTIVE, ReservationStatus.OVERDUE)


class FeeType(str, enum.Enum):
    LATE_RETURN = 'LATE_RETURN'
    DAMAGE = 'DAMAGE'
    LOST_BOOK = 'LOST_BOOK'
    MEMBERSHIP = 'MEMBERSHIP'
    PROCESSING = 'PROCESSING'


class FeeStatus(str, enum.Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    WAIVED = 'WAIVED'
    OVERDUE = 'OVERDUE'


OPEN_FEE_STATUSES = (FeeStatus.PENDING, FeeStatus.OVERDUE)


class ApplicationStatus(str, enum.Enum):
    PENDING = 'PENDING'
    UNDER_REVIEW = 'UNDER_REVIEW'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


def coerce_enum(enum_cls, value):
    """Accept an enum member or its (case-insensitive) value; ValueError otherwise."""
    if isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).strip().upper())


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    phone = db.Column(db.String(20))
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.Enum(Role), nullable=False, default=Role.MEMBER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    reservations = db.relationship('Reservation', backref='user', lazy=True,
                                   foreign_keys='Reservation.user_id')
    fees = db.relationship('FeeTransaction', backref='user', lazy=True,
                           foreign_keys='FeeTransaction.user_id')

    def has_role(self, *roles):
        return self.role in roles

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'phone': self.phone,
            'role': self.role.value,
            'isActive': self.is_active,
        }


class Book(db.Model):
    __table_args__ = (
        db.CheckConstraint('available_copies >= 0', name='ck_book_available_non_negative'),
        db.CheckConstraint('available_copies <= total_copies', name='ck_book_available_le_total'),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    author = db.Column(db.String(200), nullable=False)
    isbn = db.Column(db.String(20), unique=True)
    category = db.Column(db.String(100))
    description = db.Column(db.Text)
    total_copies = db.Column(db.Integer, nullable=False, default=1)
    available_copies = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    reservations = db.relationship('Reservation', backref='book', lazy=True)

    @property
    def is_available(self):
        return self.available_copies > 0

    @property
    def availability_status(self):
        return 'Available' if self.available_copies > 0 else 'Checked Out'

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'category': self.category,
            'description': self.description,
            'totalCopies': self.total_copies,
            'availableCopies': self.available_copies,
            'availability': self.availability_status,
        }


_OPEN_RESERVATION_WHERE = text("status IN ('PENDING', 'APPROVED', 'ACTIVE', 'OVERDUE')")


class Reservation(db.Model):
    __table_args__ = (
        # At most one open reservation per member and book; needs partial index support
        db.Index('uq_reservation_open_member_book', 'user_id', 'book_id', unique=True,
                 sqlite_where=_OPEN_RESERVATION_WHERE, postgresql_where=_OPEN_RESERVATION_WHERE)
        .ddl_if(dialect=('sqlite', 'postgresql')),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=False)

    status = db.Column(db.Enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING)
    reserved_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    approved_at = db.Column(db.DateTime)
    approved_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    # Set only when the copy is handed over (ACTIVE)
    due_date = db.Column(db.DateTime)
    # Set only on COMPLETED
    returned_at = db.Column(db.DateTime)
    notes = db.Column(db.Text)

    fees = db.relationship('FeeTransaction', backref='reservation', lazy=True)

    @property
    def is_overdue(self):
        if self.status not in CHECKED_OUT_STATUSES or self.due_date is None:
            return False
        return utcnow() > self.due_date

    @property
    def days_overdue(self):
        if not self.is_overdue:
            return 0
        return (utcnow() - self.due_date).days

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'userName': self.user.name if self.user else None,
            'userEmail': self.user.email if self.user else None,
            'bookId': self.book_id,
            'bookTitle': self.book.title if self.book else None,
            'bookAuthor': self.book.author if self.book else None,
            'status': self.status.value,
            'reservedAt': _iso(self.reserved_at),
            'approvedAt': _iso(self.approved_at),
            'dueDate': _iso(self.due_date),
            'returnedAt': _iso(self.returned_at),
            'notes': self.notes,
        }


class FeeStructure(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    fee_type = db.Column(db.Enum(FeeType), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='ZAR')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.fee_type.value,
            'name': self.name,
            'description': self.description,
            'amount': self.amount,
            'currency': self.currency,
            'isActive': self.is_active,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


class FeeTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    fee_type = db.Column(db.Enum(FeeType), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='ZAR')
    reason = db.Column(db.String(300), nullable=False)

    status = db.Column(db.Enum(FeeStatus), nullable=False, default=FeeStatus.PENDING)
    due_date = db.Column(db.DateTime, nullable=False)
    paid_date = db.Column(db.DateTime)
    waived_at = db.Column(db.DateTime)
    resolved_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    reservation_id = db.Column(db.Integer, db.ForeignKey('reservation.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    payment_requests = db.relationship('PaymentRequest', backref='transaction', lazy=True)

    @property
    def effective_status(self):
        """Stored status, reported as OVERDUE once a pending fee is past due."""
        if self.status == FeeStatus.PENDING and utcnow() > self.due_date:
            return FeeStatus.OVERDUE
        return self.status

    @property
    def is_open(self):
        return self.status in OPEN_FEE_STATUSES

    def to_dict(self):
        book = self.reservation.book if self.reservation else None
        return {
            'id': self.id,
            'userId': self.user_id,
            'userName': self.user.name if self.user else None,
            'userEmail': self.user.email if self.user else None,
            'feeType': self.fee_type.value,
            'amount': self.amount,
            'currency': self.currency,
            'reason': self.reason,
            'status': self.effective_status.value,
            'dueDate': _iso(self.due_date),
            'paidDate': _iso(self.paid_date),
            'waivedAt': _iso(self.waived_at),
            'createdAt': _iso(self.created_at),
            'reservationId': self.reservation_id,
            'bookTitle': book.title if book else None,
        }


class PaymentRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('fee_transaction.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    message = db.Column(db.Text, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'transactionId': self.transaction_id,
            'userId': self.user_id,
            'message': self.message,
            'submittedAt': _iso(self.submitted_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', backref=db.backref('notifications', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'type': self.notification_type,
            'isRead': self.is_read,
            'createdAt': _iso(self.created_at),
        }


class MembershipApplication(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), nullable=False, index=True)
    phone = db.Column(db.String(20), nullable=False)
    address = db.Column(db.Text, nullable=False)

    status = db.Column(db.Enum(ApplicationStatus), nullable=False, default=ApplicationStatus.PENDING)
    review_notes = db.Column(db.Text)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    reviewed_at = db.Column(db.DateTime)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def to_dict(self):
        return {
            'id': self.id,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'status': self.status.value,
            'reviewNotes': self.review_notes,
            'reviewedBy': self.reviewed_by,
            'reviewedAt': _iso(self.reviewed_at),
            'createdAt': _iso(self.created_at),
        }
