from __future__ import annotations

from pathlib import Path
from typing import Iterable

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask
from sqlalchemy.engine import Connection

from pedidos.db import _convert_qmark_to_pg, init_db


def _project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def to_sqlalchemy_url(raw_db_path: str) -> str:
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH no definido para migraciones.")

    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw

    sqlite_path = Path(raw).expanduser().resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


def build_alembic_config(app: Flask) -> AlembicConfig:
    root = _project_root()
    alembic_ini = root / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini no encontrado en la raiz del proyecto.")

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str((root / "migrations").as_posix()))
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(app.config["DB_PATH"]))
    return alembic_cfg


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Migraciones del espejo local (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        click.echo(f"Migracion aplicada hasta {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app), revision)
        click.echo(f"Migracion revertida hasta {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @db_group.command("init-schema")
    def db_init_schema() -> None:
        """Crea las tablas sin Alembic (desarrollo)."""
        init_db()
        click.echo("Esquema local creado.")


class AlembicDbAdapter:
    """Exposes a migration connection through the pedidos.db Database API."""

    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return self._connection.exec_driver_sql(sql)
        if self.backend == "postgres":
            sql = _convert_qmark_to_pg(sql)
        return self._connection.exec_driver_sql(sql, tuple(params))

    def commit(self):
        # Alembic owns the transaction.
        return None


def migration_db(connection: Connection) -> AlembicDbAdapter:
    dialect = (connection.dialect.name or "").lower()
    return AlembicDbAdapter(connection, "postgres" if dialect.startswith("postgres") else "sqlite")
