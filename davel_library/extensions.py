from contextlib import contextmanager

from flask_login import LoginManager
from flask_mail import Mail
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
login_manager = LoginManager()
mail = Mail()


@contextmanager
def atomic():
    """Commit the session when the block succeeds, roll back and re-raise otherwise."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
