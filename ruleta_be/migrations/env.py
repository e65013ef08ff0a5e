import logging
from logging.config import fileConfig

from flask import current_app
from alembic import context

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger('alembic.env')

# Import ALL models so they are registered with the db instance
from ruleta_be.models import db
from ruleta_be.models import User, Transaction, BalanceReservation, \
    RouletteMesa, RouletteBet, RouletteDrawResult

target_metadata = db.metadata


def run_migrations_offline():
    """Run migrations in 'offline' mode.

    This configures the context with just a URL and not an Engine.
    Calls to context.execute() here emit the given string to the
    script output.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode against the Flask-Migrate engine."""
    def process_revision_directives(context, revision, directives):
        if getattr(config.cmd_opts, 'autogenerate', False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info('No changes in schema detected.')

    connectable = current_app.extensions['migrate'].db.engine

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            process_revision_directives=process_revision_directives,
            **current_app.extensions['migrate'].configure_args
        )

        with context.begin_transaction():
            context.run_migrations()


# --- Configure Database URL ---
flask_app_config_url = None
try:
    flask_app_config_url = current_app.config['SQLALCHEMY_DATABASE_URI']
except RuntimeError: # No app context
    logger.warning("Flask app context not available. Trying alembic.ini for database URL.")

ini_url = config.get_main_option("sqlalchemy.url")

if flask_app_config_url:
    config.set_main_option('sqlalchemy.url', flask_app_config_url)
    logger.info("Using database URL from Flask config.")
elif ini_url:
    logger.info("Using database URL from alembic.ini.")
else:
    raise ValueError("Missing database URL configuration for Alembic")

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
