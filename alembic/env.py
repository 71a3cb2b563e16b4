"""
Alembic environment configuration for Flask-SQLAlchemy integration
"""
from logging.config import fileConfig
import os
import sys
from pathlib import Path

from alembic import context

# The server must not start its scheduler worker or create tables while migrating
os.environ.setdefault('SCHEDULER_ENABLED', 'false')
os.environ.setdefault('AUTO_CREATE_TABLES', 'false')

# Add parent directory to path to import Flask app
sys.path.insert(0, str(Path(__file__).parent.parent))

from server import app
from models import db, TempAccessGrant, ScheduledJob, ElevationAuditLog  # noqa: F401

config = context.config

# Set sqlalchemy.url from Flask app config
config.set_main_option('sqlalchemy.url', app.config['SQLALCHEMY_DATABASE_URI'])

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = db.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL to the script output."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against the app's engine."""
    with app.app_context():
        connectable = db.engine

        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                compare_server_default=True,
            )

            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
