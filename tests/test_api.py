import pytest

from davel_library.extensions import db
from davel_library.models import Book, ReservationStatus

ADMIN = ('admin@davellibrary.com', 'admin123')
LIBRARIAN = ('librarian@davellibrary.com', 'librarian123')
MEMBER_PASSWORD = 'member123'


@pytest.fixture
def member(app, make_member):
    with app.app_context():
        user = make_member()
        return {'id': user.id, 'email': user.email}


@pytest.fixture
def book_id(app, make_book):
    with app.app_context():
        return make_book(total_copies=1).id


@pytest.fixture
def member_client(login, member):
    return login(member['email'], MEMBER_PASSWORD)


@pytest.fixture
def librarian_client(login):
    return login(*LIBRARIAN)


@pytest.fixture
def admin_client(login):
    return login(*ADMIN)


def test_login_rejects_bad_password(client):
    response = client.post('/auth/login', json={'email': ADMIN[0], 'password': 'wrong'})

    assert response.status_code == 401
    assert response.get_json() == {'success': False, 'error': 'Invalid email or password'}


def test_login_validates_body(client):
    response = client.post('/auth/login', json={'email': 'not-an-email'})

    assert response.status_code == 400
    body = response.get_json()
    assert body['success'] is False
    assert set(body['errors']) == {'email', 'password'}


def test_me_and_logout(admin_client):
    assert admin_client.get('/auth/me').get_json()['user']['role'] == 'ADMIN'

    admin_client.post('/auth/logout')

    assert admin_client.get('/auth/me').status_code == 401


def test_anonymous_and_members_cannot_use_staff_routes(client, member_client):
    assert client.get('/reservations').status_code == 401
    assert client.post('/reservations/1/approve').status_code == 401

    response = member_client.post('/reservations/1/approve')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Unauthorized'
    assert member_client.post('/books', json={'title': 'x'}).status_code == 401


def test_librarian_cannot_manage_fee_structures(librarian_client):
    response = librarian_client.post('/fees/structures', json={
        'fee_type': 'DAMAGE', 'name': 'Damage', 'amount': 30,
    })

    assert response.status_code == 401


def test_book_catalog(librarian_client, client):
    response = librarian_client.post('/books', json={
        'title': 'Things Fall Apart', 'author': 'Chinua Achebe', 'isbn': '9780385474542',
        'category': 'Fiction', 'total_copies': 3,
    })
    assert response.status_code == 201
    book = response.get_json()['book']
    assert book['availableCopies'] == 3

    duplicate = librarian_client.post('/books', json={
        'title': 'Again', 'author': 'Someone', 'isbn': '9780385474542', 'total_copies': 1,
    })
    assert duplicate.status_code == 400

    assert client.get('/books?search=achebe').get_json()['books'][0]['id'] == book['id']
    assert client.get('/books/999').status_code == 404


def test_book_validation_errors(librarian_client):
    response = librarian_client.post('/books', json={'author': 'Nobody', 'total_copies': 0})

    assert response.status_code == 400
    assert set(response.get_json()['errors']) == {'title', 'total_copies'}


def test_reservation_flow_over_http(app, member_client, librarian_client, book_id):
    response = member_client.post(f'/books/{book_id}/reserve', json={'notes': 'Weekend reading'})
    assert response.status_code == 201
    reservation_id = response.get_json()['reservation']['id']

    response = librarian_client.post(f'/reservations/{reservation_id}/approve')
    assert response.status_code == 200
    assert response.get_json()['reservation']['status'] == 'APPROVED'

    response = librarian_client.post(f'/reservations/{reservation_id}/approve')
    assert response.status_code == 400
    assert response.get_json()['success'] is False

    response = librarian_client.put(f'/reservations/{reservation_id}', json={'status': 'CHECKED_OUT'})
    assert response.status_code == 200
    assert response.get_json()['reservation']['status'] == 'ACTIVE'

    # Checked out books go back through the desk, not member cancellation
    assert member_client.post(f'/reservations/{reservation_id}/cancel').status_code == 400

    response = librarian_client.put(f'/reservations/{reservation_id}', json={'status': 'RETURNED'})
    assert response.get_json()['reservation']['status'] == 'COMPLETED'

    with app.app_context():
        assert db.session.get(Book, book_id).available_copies == 1

    mine = member_client.get('/user/reservations').get_json()['reservations']
    assert [r['status'] for r in mine] == ['COMPLETED']


def test_second_checkout_of_last_copy_fails(app, make_reservation, librarian_client, book_id):
    with app.app_context():
        book = db.session.get(Book, book_id)
        first = make_reservation(book=book, status=ReservationStatus.APPROVED).id
        second = make_reservation(book=book, status=ReservationStatus.APPROVED).id

    assert librarian_client.put(f'/reservations/{first}', json={'status': 'ACTIVE'}).status_code == 200
    response = librarian_client.put(f'/reservations/{second}', json={'status': 'ACTIVE'})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'No copies of this book are available'


def test_edit_book_copies_while_a_copy_is_out(app, make_reservation, librarian_client, book_id):
    with app.app_context():
        reservation_id = make_reservation(book=db.session.get(Book, book_id),
                                          status=ReservationStatus.APPROVED).id
    assert librarian_client.put(f'/reservations/{reservation_id}', json={'status': 'ACTIVE'}).status_code == 200

    response = librarian_client.put(f'/books/{book_id}', json={
        'title': 'Arrow of God', 'author': 'Chinua Achebe', 'total_copies': 2,
    })
    assert response.status_code == 200
    book = response.get_json()['book']
    assert (book['title'], book['totalCopies'], book['availableCopies']) == ('Arrow of God', 2, 1)

    response = librarian_client.put(f'/reservations/{reservation_id}', json={'status': 'RETURNED'})
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Book, book_id).available_copies == 2


def test_edit_book_cannot_drop_borrowed_copies(app, make_reservation, librarian_client, book_id):
    response = librarian_client.put(f'/books/{book_id}', json={'title': 'Book 1', 'author': 'Chinua Achebe', 'total_copies': 2})
    assert response.status_code == 200
    with app.app_context():
        book = db.session.get(Book, book_id)
        reservation_ids = [make_reservation(book=book, status=ReservationStatus.APPROVED).id for _ in range(2)]
    for reservation_id in reservation_ids:
        assert librarian_client.put(f'/reservations/{reservation_id}', json={'status': 'ACTIVE'}).status_code == 200

    response = librarian_client.put(f'/books/{book_id}', json={
        'title': 'Renamed', 'author': 'Chinua Achebe', 'total_copies': 1,
    })

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Cannot reduce total copies below the number currently borrowed'
    with app.app_context():
        book = db.session.get(Book, book_id)
        assert (book.title, book.total_copies, book.available_copies) == ('Book 1', 2, 0)


def test_reject_with_notes(member_client, librarian_client, book_id):
    reservation_id = member_client.post(f'/books/{book_id}/reserve', json={}).get_json()['reservation']['id']

    response = librarian_client.post(f'/reservations/{reservation_id}/reject', json={'notes': 'Reserved for class'})

    assert response.get_json()['reservation']['status'] == 'REJECTED'
    notifications = member_client.get('/notifications').get_json()
    assert notifications['unreadCount'] == 1
    assert notifications['notifications'][0]['type'] == 'reservation_rejected'


def test_unknown_reservation_is_404(librarian_client):
    response = librarian_client.post('/reservations/999/approve')

    assert response.status_code == 404
    assert response.get_json() == {'success': False, 'error': 'Reservation not found'}


def test_fees_over_http(member, member_client, librarian_client):
    response = librarian_client.post('/fees', json={
        'user_id': member['id'], 'fee_type': 'LOST_BOOK', 'reason': 'Lost on holiday',
    })
    assert response.status_code == 201
    fee = response.get_json()['fee']
    assert fee['amount'] == 50.0
    assert fee['status'] == 'PENDING'

    mine = member_client.get('/user/fees').get_json()
    assert mine['outstanding'] == 50.0

    slip = member_client.get(f'/fees/{fee["id"]}/slip')
    assert slip.status_code == 200
    assert slip.mimetype == 'application/pdf'
    assert slip.data.startswith(b'%PDF')

    response = member_client.post(f'/user/fees/{fee["id"]}/payment-request', json={'message': 'Paid in cash'})
    assert response.status_code == 201

    assert librarian_client.post(f'/fees/{fee["id"]}/waive').get_json()['fee']['status'] == 'WAIVED'
    response = librarian_client.post(f'/fees/{fee["id"]}/approve')
    assert response.status_code == 400

    listing = librarian_client.get('/fees?status=waived').get_json()
    assert [f['id'] for f in listing['fees']] == [fee['id']]
    assert listing['statistics']['waivedCount'] == 1


def test_fee_for_type_without_structure(admin_client, member):
    structures = admin_client.get('/fees/structures').get_json()['structures']
    damage = next(s for s in structures if s['type'] == 'DAMAGE')
    response = admin_client.patch(f'/fees/structures/{damage["id"]}', json={'is_active': False})
    assert response.get_json()['structure']['isActive'] is False

    response = admin_client.post('/fees', json={'user_id': member['id'], 'fee_type': 'DAMAGE', 'reason': 'Torn'})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'No active fee structure for DAMAGE'


def test_membership_application_over_http(client, admin_client):
    response = client.post('/membership/apply', json={
        'first_name': 'Sipho', 'last_name': 'Ndlovu', 'email': 'sipho@davellibrary.com',
        'phone': '0841234567', 'address': '3 Main Road',
    })
    assert response.status_code == 201
    application_id = response.get_json()['application']['id']

    assert client.get('/membership/status?email=sipho@davellibrary.com').get_json()['status'] == 'PENDING'
    assert client.get('/membership/status?email=unknown@davellibrary.com').status_code == 404

    response = admin_client.patch(f'/admin/applications/{application_id}', json={'status': 'APPROVED'})
    assert response.get_json()['application']['status'] == 'APPROVED'


def test_dashboards(member_client, admin_client):
    member_view = member_client.get('/dashboard').get_json()
    assert member_view['title'] == 'Member Dashboard'
    assert member_view['outstanding'] == 0

    admin_view = admin_client.get('/dashboard').get_json()
    assert admin_view['title'] == 'Admin Dashboard'
    assert admin_view['feeStatistics']['totalCount'] == 0


def test_unknown_route_returns_json(client):
    response = client.get('/no-such-page')

    assert response.status_code == 404
    assert response.get_json()['success'] is False
