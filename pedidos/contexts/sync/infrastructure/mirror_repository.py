from __future__ import annotations

from typing import Any, Mapping

from pedidos.contexts.sync.domain.errors import LocalStoreError
from pedidos.contexts.sync.domain.mappings import EntityMapping
from pedidos.db import DB_ERRORS


class MirrorRepository:
    """Reads and writes the local mirror table of one entity kind.

    Table and column names only ever come from the fixed entity mappings.
    Driver errors surface as LocalStoreError.
    """

    def __init__(self, db, mapping: EntityMapping, *, store_id: str) -> None:
        self.db = db
        self.mapping = mapping
        self.store_id = store_id

    def find_by_external_id(self, external_id: int) -> dict | None:
        return self._fetch_one(
            f"SELECT * FROM {self.mapping.table} WHERE external_id = ? LIMIT 1",
            (external_id,),
            f"No se pudo leer {self.mapping.table}",
        )

    def resolve(self, table: str, external_id: int) -> int | None:
        row = self._fetch_one(
            f"SELECT id FROM {table} WHERE external_id = ? LIMIT 1",
            (external_id,),
            f"No se pudo resolver referencia en {table}",
        )
        return int(row["id"]) if row else None

    def insert(self, external_id: int, values: Mapping[str, Any]) -> int:
        row = dict(self.mapping.insert_defaults)
        row.update(values)
        row["external_id"] = external_id
        if self.mapping.uses_store:
            row["store_id"] = self.store_id

        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {self.mapping.table} ({', '.join(columns)}) VALUES ({placeholders})"
        try:
            return self.db.insert(sql, [row[column] for column in columns])
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo insertar en {self.mapping.table}: {exc}") from exc

    def update(self, local_id: int, values: Mapping[str, Any]) -> None:
        if not values:
            return
        assignments = ", ".join(f"{column} = ?" for column in values)
        sql = f"UPDATE {self.mapping.table} SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?"
        try:
            self.db.execute(sql, [*values.values(), local_id])
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo actualizar {self.mapping.table}: {exc}") from exc

    def commit(self) -> None:
        try:
            self.db.commit()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo confirmar la transaccion: {exc}") from exc

    def rollback(self) -> None:
        try:
            self.db.rollback()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo revertir la transaccion: {exc}") from exc

    def _fetch_one(self, sql: str, params: tuple, failure: str) -> dict | None:
        try:
            row = self.db.execute(sql, params).fetchone()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"{failure}: {exc}") from exc
        return dict(row) if row else None
