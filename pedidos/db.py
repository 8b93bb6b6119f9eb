import sqlite3
from typing import Dict, Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


DB_ERRORS: tuple = (sqlite3.Error,) if psycopg2 is None else (sqlite3.Error, psycopg2.Error)


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def insert(self, sql: str, params: Iterable | None = None) -> int:
        if self.backend == "postgres":
            row = self.execute(f"{sql} RETURNING id", params).fetchone()
            return int(row["id"])
        cursor = self.execute(sql, params)
        return int(cursor.lastrowid)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 no instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = False
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    create_schema(db)


def create_schema(db) -> None:
    create_tables(db, MIRROR_TABLES)


def drop_schema(db) -> None:
    drop_tables(db, MIRROR_TABLES)


def create_tables(db, tables: Iterable[str]) -> None:
    """Create the given mirror tables and their indexes, in dependency order."""
    statements = _POSTGRES_SCHEMA if db.backend == "postgres" else _SQLITE_SCHEMA
    wanted = set(tables)
    selected = [table for table in MIRROR_TABLES if table in wanted]
    for table in selected:
        db.execute(statements[table])
    for table in selected:
        for statement in _INDEXES.get(table, []):
            db.execute(statement)
    db.commit()


def drop_tables(db, tables: Iterable[str]) -> None:
    selected = set(tables)
    for table in reversed(MIRROR_TABLES):
        if table in selected:
            db.execute(f"DROP TABLE IF EXISTS {table}")
    db.commit()


# Dependency order: a table only references tables listed before it.
MIRROR_TABLES: List[str] = [
    "price_lists",
    "sales_reps",
    "products",
    "clients",
    "orders",
    "pricelist_assignments",
    "price_list_items",
    "order_items",
]


_SQLITE_SCHEMA: Dict[str, str] = {
    "price_lists": """
    CREATE TABLE IF NOT EXISTS price_lists (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        name TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        currency TEXT,
        type TEXT NOT NULL DEFAULT 'normal' CHECK (type IN ('vip','mayorista','normal')),
        discount_percentage REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "sales_reps": """
    CREATE TABLE IF NOT EXISTS sales_reps (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id INTEGER,
        name TEXT NOT NULL,
        login TEXT,
        email TEXT,
        phone TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "products": """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        name TEXT NOT NULL,
        description TEXT,
        list_price REAL NOT NULL DEFAULT 0,
        stock_level REAL NOT NULL DEFAULT 0,
        category TEXT,
        uom TEXT NOT NULL DEFAULT 'kg',
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "clients": """
    CREATE TABLE IF NOT EXISTS clients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        street TEXT,
        city TEXT,
        state TEXT,
        zip TEXT,
        pricelist_id INTEGER REFERENCES price_lists(id),
        odoo_pricelist_id INTEGER,
        sales_rep_id INTEGER REFERENCES sales_reps(id),
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "orders": """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        client_id INTEGER NOT NULL REFERENCES clients(id),
        order_number TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','confirmed','processing','delivered','cancelled')
        ),
        invoice_status TEXT NOT NULL DEFAULT 'no' CHECK (invoice_status IN ('no','to_invoice','invoiced')),
        subtotal REAL NOT NULL DEFAULT 0,
        tax REAL NOT NULL DEFAULT 0,
        total REAL NOT NULL DEFAULT 0,
        order_date TEXT,
        notes TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "pricelist_assignments": """
    CREATE TABLE IF NOT EXISTS pricelist_assignments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL REFERENCES clients(id),
        pricelist_id INTEGER NOT NULL REFERENCES price_lists(id),
        assigned_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "price_list_items": """
    CREATE TABLE IF NOT EXISTS price_list_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id INTEGER,
        price_list_id INTEGER NOT NULL REFERENCES price_lists(id),
        product_id INTEGER REFERENCES products(id),
        category TEXT,
        min_quantity REAL NOT NULL DEFAULT 0,
        date_start TEXT,
        date_end TEXT,
        compute_price TEXT NOT NULL DEFAULT 'fixed' CHECK (compute_price IN ('fixed','percentage','formula')),
        fixed_price REAL NOT NULL DEFAULT 0,
        percent_price REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "order_items": """
    CREATE TABLE IF NOT EXISTS order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        product_id INTEGER NOT NULL REFERENCES products(id),
        quantity REAL NOT NULL CHECK (quantity > 0),
        unit_price REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
}


_POSTGRES_SCHEMA: Dict[str, str] = {
    "price_lists": """
    CREATE TABLE IF NOT EXISTS price_lists (
        id SERIAL PRIMARY KEY,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        name TEXT NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        currency TEXT,
        type TEXT NOT NULL DEFAULT 'normal' CHECK (type IN ('vip','mayorista','normal')),
        discount_percentage NUMERIC(5, 2) NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "sales_reps": """
    CREATE TABLE IF NOT EXISTS sales_reps (
        id SERIAL PRIMARY KEY,
        external_id INTEGER,
        name TEXT NOT NULL,
        login TEXT,
        email TEXT,
        phone TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "products": """
    CREATE TABLE IF NOT EXISTS products (
        id SERIAL PRIMARY KEY,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        name TEXT NOT NULL,
        description TEXT,
        list_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        stock_level NUMERIC(12, 3) NOT NULL DEFAULT 0,
        category TEXT,
        uom TEXT NOT NULL DEFAULT 'kg',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "clients": """
    CREATE TABLE IF NOT EXISTS clients (
        id SERIAL PRIMARY KEY,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        street TEXT,
        city TEXT,
        state TEXT,
        zip TEXT,
        pricelist_id INTEGER REFERENCES price_lists(id),
        odoo_pricelist_id INTEGER,
        sales_rep_id INTEGER REFERENCES sales_reps(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "orders": """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        store_id TEXT NOT NULL,
        external_id INTEGER,
        client_id INTEGER NOT NULL REFERENCES clients(id),
        order_number TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','confirmed','processing','delivered','cancelled')
        ),
        invoice_status TEXT NOT NULL DEFAULT 'no' CHECK (invoice_status IN ('no','to_invoice','invoiced')),
        subtotal NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total NUMERIC(12, 2) NOT NULL DEFAULT 0,
        order_date TIMESTAMPTZ,
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "pricelist_assignments": """
    CREATE TABLE IF NOT EXISTS pricelist_assignments (
        id SERIAL PRIMARY KEY,
        client_id INTEGER NOT NULL REFERENCES clients(id),
        pricelist_id INTEGER NOT NULL REFERENCES price_lists(id),
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "price_list_items": """
    CREATE TABLE IF NOT EXISTS price_list_items (
        id SERIAL PRIMARY KEY,
        external_id INTEGER,
        price_list_id INTEGER NOT NULL REFERENCES price_lists(id),
        product_id INTEGER REFERENCES products(id),
        category TEXT,
        min_quantity NUMERIC(12, 3) NOT NULL DEFAULT 0,
        date_start TIMESTAMPTZ,
        date_end TIMESTAMPTZ,
        compute_price TEXT NOT NULL DEFAULT 'fixed' CHECK (compute_price IN ('fixed','percentage','formula')),
        fixed_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        percent_price NUMERIC(5, 2) NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "order_items": """
    CREATE TABLE IF NOT EXISTS order_items (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        product_id INTEGER NOT NULL REFERENCES products(id),
        quantity NUMERIC(12, 3) NOT NULL CHECK (quantity > 0),
        unit_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
}


# NULL external ids are allowed repeatedly on both backends.
_INDEXES: Dict[str, List[str]] = {
    "price_lists": ["CREATE UNIQUE INDEX IF NOT EXISTS ux_price_lists_external_id ON price_lists (external_id)"],
    "sales_reps": ["CREATE UNIQUE INDEX IF NOT EXISTS ux_sales_reps_external_id ON sales_reps (external_id)"],
    "products": ["CREATE UNIQUE INDEX IF NOT EXISTS ux_products_external_id ON products (external_id)"],
    "clients": ["CREATE UNIQUE INDEX IF NOT EXISTS ux_clients_external_id ON clients (external_id)"],
    "orders": ["CREATE UNIQUE INDEX IF NOT EXISTS ux_orders_external_id ON orders (external_id)"],
    "pricelist_assignments": [
        "CREATE INDEX IF NOT EXISTS ix_pricelist_assignments_client ON pricelist_assignments (client_id, assigned_at)",
    ],
    "price_list_items": [
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_price_list_items_external_id ON price_list_items (external_id)",
        "CREATE INDEX IF NOT EXISTS ix_price_list_items_price_list ON price_list_items (price_list_id)",
    ],
    "order_items": ["CREATE INDEX IF NOT EXISTS ix_order_items_order ON order_items (order_id)"],
}
