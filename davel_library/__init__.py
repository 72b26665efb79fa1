import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .cli import register_commands
from .errors import LibraryError
from .extensions import db, login_manager, mail
from .models import User
from .notifier import Notifier
from .routes import bp
from .seed import seed_defaults


def create_app(config_object=None):
    """Build the library service.

    ``config_object`` is a config class or an import path such as
    ``'davel_library.config.TestingConfig'``.
    """
    app = Flask(__name__)
    app.config.from_object(config_object or 'davel_library.config.Config')

    logging.basicConfig(level=app.config['LOG_LEVEL'])
    app.logger.setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)
    login_manager.init_app(app)
    mail.init_app(app)
    app.extensions['notifier'] = Notifier.from_app(app, mail)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': 'Unauthorized'}), 401

    @app.errorhandler(LibraryError)
    def handle_library_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'error': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        app.logger.exception('Unhandled error')
        return jsonify({'success': False, 'error': 'Internal server error'}), 500

    app.register_blueprint(bp)
    register_commands(app)

    with app.app_context():
        db.create_all()
        if app.config['SEED_DEFAULTS']:
            seed_defaults()

    return app
