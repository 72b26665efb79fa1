from datetime import timedelta

from davel_library import reservations
from davel_library.extensions import db
from davel_library.models import FeeStructure, Reservation, ReservationStatus, User, utcnow


def test_init_db_is_idempotent(app):
    result = app.test_cli_runner().invoke(args=['init-db'])

    assert result.exit_code == 0
    assert '0 default record(s) created' in result.output
    with app.app_context():
        assert User.query.count() == 2
        assert FeeStructure.query.filter_by(is_active=True).count() == 5


def test_sweep_overdue_command(app, make_reservation):
    with app.app_context():
        reservation = make_reservation(status=ReservationStatus.APPROVED)
        reservation = reservations.activate(reservation.id)
        reservation.due_date = utcnow() - timedelta(days=2)
        db.session.commit()
        reservation_id = reservation.id

    result = app.test_cli_runner().invoke(args=['sweep-overdue'])

    assert result.exit_code == 0
    assert '1 reservation(s) marked overdue.' in result.output
    with app.app_context():
        assert db.session.get(Reservation, reservation_id).status == ReservationStatus.OVERDUE
