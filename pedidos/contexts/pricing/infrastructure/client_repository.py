from __future__ import annotations

from pedidos.contexts.sync.domain.errors import LocalStoreError
from pedidos.db import DB_ERRORS


class ClientPricingRepository:
    def get_client(self, db, client_id: int) -> dict | None:
        try:
            row = db.execute(
                """
                SELECT c.id, c.external_id, c.name, c.email, c.phone, c.city, c.state,
                       c.pricelist_id, c.odoo_pricelist_id, c.sales_rep_id, c.updated_at,
                       p.name AS pricelist_name
                FROM clients c
                LEFT JOIN price_lists p ON p.id = c.pricelist_id
                WHERE c.id = ?
                LIMIT 1
                """,
                (client_id,),
            ).fetchone()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo leer el cliente {client_id}: {exc}") from exc
        return dict(row) if row else None

    def get_price_list(self, db, pricelist_id: int) -> dict | None:
        try:
            row = db.execute(
                """
                SELECT id, external_id, name, active, type, discount_percentage
                FROM price_lists
                WHERE id = ?
                LIMIT 1
                """,
                (pricelist_id,),
            ).fetchone()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo leer la tarifa {pricelist_id}: {exc}") from exc
        return dict(row) if row else None

    def assign_pricelist(self, db, client_id: int, pricelist_id: int, odoo_pricelist_id: int) -> None:
        """Mirror a confirmed assignment: current value on clients plus a history row."""
        try:
            db.execute(
                """
                UPDATE clients
                SET pricelist_id = ?, odoo_pricelist_id = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (pricelist_id, odoo_pricelist_id, client_id),
            )
            db.execute(
                "INSERT INTO pricelist_assignments (client_id, pricelist_id) VALUES (?, ?)",
                (client_id, pricelist_id),
            )
            db.commit()
        except DB_ERRORS as exc:
            db.rollback()
            raise LocalStoreError(f"No se pudo guardar la tarifa del cliente {client_id}: {exc}") from exc

    def get_price_list_rules(self, db, pricelist_id: int) -> list[dict]:
        try:
            rows = db.execute(
                """
                SELECT r.id, r.external_id, r.product_id, p.name AS product_name, r.category,
                       r.min_quantity, r.date_start, r.date_end, r.compute_price,
                       r.fixed_price, r.percent_price
                FROM price_list_items r
                LEFT JOIN products p ON p.id = r.product_id
                WHERE r.price_list_id = ?
                ORDER BY r.min_quantity, r.id
                """,
                (pricelist_id,),
            ).fetchall()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudieron leer las reglas de la tarifa {pricelist_id}: {exc}") from exc
        return [dict(row) for row in rows]
