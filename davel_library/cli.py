import click

from .extensions import db
from .reservations import sweep_overdue
from .seed import seed_defaults


def register_commands(app):

    @app.cli.command('init-db')
    def init_db():
        """Create the tables and the default accounts and fee structures."""
        db.create_all()
        created = seed_defaults()
        click.echo(f'Database ready ({created} default record(s) created).')

    @app.cli.command('sweep-overdue')
    def sweep_overdue_command():
        """Mark checked-out reservations past their due date as overdue."""
        marked = sweep_overdue()
        click.echo(f'{marked} reservation(s) marked overdue.')
