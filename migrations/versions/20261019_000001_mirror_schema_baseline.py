"""Local ERP mirror baseline from pedidos.db

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from pedidos.db import create_tables, drop_tables
from pedidos.db_migrations import migration_db


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLES = ("price_lists", "sales_reps", "products", "clients", "orders", "pricelist_assignments")


def upgrade() -> None:
    create_tables(migration_db(op.get_bind()), TABLES)


def downgrade() -> None:
    drop_tables(migration_db(op.get_bind()), TABLES)
