from flask import current_app
from werkzeug.security import generate_password_hash

from .extensions import atomic, db
from .models import FeeStructure, FeeType, Role, User

DEFAULT_FEE_STRUCTURES = [
    (FeeType.LATE_RETURN, 'Late Return Fee', 5.00, 'Charged when a book is returned after its due date'),
    (FeeType.DAMAGE, 'Book Damage Fee', 25.00, 'Charged for damage to a borrowed book'),
    (FeeType.LOST_BOOK, 'Lost Book Fee', 50.00, 'Replacement cost for a lost book'),
    (FeeType.MEMBERSHIP, 'Annual Membership Fee', 100.00, 'Yearly library membership'),
    (FeeType.PROCESSING, 'Processing Fee', 20.00, 'Administrative processing charge'),
]


def seed_defaults():
    """Create the default staff accounts and fee structures if they are missing."""
    config = current_app.config
    created = 0

    with atomic():
        # Create default admin and librarian
        staff = [
            ('admin@davellibrary.com', 'Library Administrator', Role.ADMIN, config['DEFAULT_ADMIN_PASSWORD']),
            ('librarian@davellibrary.com', 'Library Librarian', Role.LIBRARIAN,
             config['DEFAULT_LIBRARIAN_PASSWORD']),
        ]
        for email, name, role, password in staff:
            if not User.query.filter_by(email=email).first():
                db.session.add(User(
                    email=email,
                    name=name,
                    role=role,
                    password_hash=generate_password_hash(password),
                ))
                created += 1

        for fee_type, name, amount, description in DEFAULT_FEE_STRUCTURES:
            if not FeeStructure.query.filter_by(fee_type=fee_type).first():
                db.session.add(FeeStructure(
                    fee_type=fee_type,
                    name=name,
                    amount=amount,
                    description=description,
                    currency=config['CURRENCY'],
                    is_active=True,
                ))
                created += 1

    if created:
        current_app.logger.info('Seeded %s default record(s)', created)
    return created
