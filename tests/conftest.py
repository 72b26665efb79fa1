import itertools

import pytest
from werkzeug.security import generate_password_hash

from davel_library import create_app
from davel_library.config import TestingConfig
from davel_library.extensions import db
from davel_library.models import Book, Reservation, ReservationStatus, Role, User

ADMIN = ('admin@davellibrary.com', 'admin123')
LIBRARIAN = ('librarian@davellibrary.com', 'librarian123')
MEMBER_PASSWORD = 'member123'


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Application context for tests that call the services directly."""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(app):
    """Return a fresh test client logged in with the given credentials."""
    def _login(email, password):
        client = app.test_client()
        response = client.post('/auth/login', json={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return client
    return _login


@pytest.fixture
def make_member():
    counter = itertools.count(1)

    def _make(name=None, password=MEMBER_PASSWORD):
        n = next(counter)
        user = User(
            email=f'member{n}@davellibrary.com',
            name=name or f'Member {n}',
            phone='0821234567',
            role=Role.MEMBER,
            password_hash=generate_password_hash(password),
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_book():
    counter = itertools.count(1)

    def _make(title=None, total_copies=1):
        n = next(counter)
        book = Book(
            title=title or f'Book {n}',
            author='Chinua Achebe',
            isbn=f'978000000{n:04d}',
            category='Fiction',
            total_copies=total_copies,
            available_copies=total_copies,
        )
        db.session.add(book)
        db.session.commit()
        return book
    return _make


@pytest.fixture
def make_reservation(make_member, make_book):
    def _make(user=None, book=None, status=ReservationStatus.PENDING):
        reservation = Reservation(
            user_id=(user or make_member()).id,
            book_id=(book or make_book()).id,
            status=status,
        )
        db.session.add(reservation)
        db.session.commit()
        return reservation
    return _make


@pytest.fixture
def admin_id(ctx):
    return User.query.filter_by(email=ADMIN[0]).first().id
