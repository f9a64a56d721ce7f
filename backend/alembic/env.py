"""
Alembic-Umgebung für das Zugriffsschema.

DB-URL, Engine und Metadaten kommen direkt aus app.db, damit Migrationen
und Laufzeit dieselbe Datenbank sehen. SQLite wird im Batch-Modus
migriert (ALTER TABLE ist dort stark eingeschränkt).
"""

from logging.config import fileConfig

from alembic import context

from app.db import DB_URL, Base, _IS_SQLITE, engine
import app.models  # noqa: F401

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)
context.config.set_main_option("sqlalchemy.url", DB_URL)


def _migrate(**options) -> None:
    context.configure(target_metadata=Base.metadata, render_as_batch=_IS_SQLITE, **options)
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    # SQL-Skript statt direkter Ausführung
    _migrate(url=DB_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
else:
    with engine.connect() as connection:
        _migrate(connection=connection, compare_type=True)
