from __future__ import annotations

from typing import List

from pedidos.contexts.sync.domain.errors import LocalStoreError
from pedidos.db import DB_ERRORS


class PendingOrderRepository:
    """Local orders that were taken in the app and never reached the ERP."""

    def __init__(self, db) -> None:
        self.db = db

    def pending_orders(self, limit: int) -> List[dict]:
        try:
            rows = self.db.execute(
                """
                SELECT o.id, o.order_number, o.notes, o.client_id,
                       c.external_id AS client_external_id
                FROM orders o
                JOIN clients c ON c.id = o.client_id
                WHERE o.external_id IS NULL AND o.status <> 'cancelled'
                ORDER BY o.id
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudieron leer los pedidos pendientes: {exc}") from exc
        return [dict(row) for row in rows]

    def order_lines(self, order_id: int) -> List[dict]:
        try:
            rows = self.db.execute(
                """
                SELECT i.id, i.product_id, i.quantity, i.unit_price,
                       p.external_id AS product_external_id
                FROM order_items i
                LEFT JOIN products p ON p.id = i.product_id
                WHERE i.order_id = ?
                ORDER BY i.id
                """,
                (order_id,),
            ).fetchall()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudieron leer las lineas del pedido {order_id}: {exc}") from exc
        return [dict(row) for row in rows]

    def mark_pushed(self, order_id: int, external_id: int) -> None:
        """Link the order to its ERP id and confirm it, in one transaction."""
        try:
            cursor = self.db.execute(
                """
                UPDATE orders
                SET external_id = ?, status = 'confirmed', updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND external_id IS NULL
                """,
                (external_id, order_id),
            )
            if cursor.rowcount != 1:
                raise LocalStoreError(f"El pedido {order_id} ya estaba vinculado al ERP.")
            self.db.commit()
        except DB_ERRORS as exc:
            self._rollback()
            raise LocalStoreError(f"No se pudo vincular el pedido {order_id}: {exc}") from exc
        except LocalStoreError:
            self._rollback()
            raise

    def _rollback(self) -> None:
        try:
            self.db.rollback()
        except DB_ERRORS as exc:
            raise LocalStoreError(f"No se pudo revertir la transaccion: {exc}") from exc
