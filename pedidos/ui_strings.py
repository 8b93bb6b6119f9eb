from __future__ import annotations

from typing import Dict


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "sync_completed": "Sincronizacion completa: {created} creados, {updated} actualizados.",
        "pricelist_assigned": "Tarifa actualizada en el ERP.",
        "pricelist_unchanged": "El cliente ya tiene esta tarifa.",
        "pricelist_created": "Lista de precios creada en el ERP.",
        "orders_pushed": "Pedidos enviados al ERP: {pushed} enviados, {errors} con error.",
    },
    "error": {
        "action_invalid": "Accion invalida para esta operacion.",
        "client_not_found": "Cliente no encontrado.",
        "erp_link_missing": "El registro no esta vinculado al ERP. Sincroniza antes de continuar.",
        "erp_rejected": "El ERP rechazo el cambio. Revisa los datos e intenta de nuevo.",
        "erp_unavailable": "No pudimos comunicarnos con el ERP. Intenta de nuevo en unos minutos.",
        "kind_not_supported": "Tipo de sincronizacion no soportado.",
        "kind_required": "Indica el tipo de sincronizacion.",
        "local_store_failed": "No se pudo guardar el cambio localmente. Intenta de nuevo.",
        "name_required": "Indica un nombre.",
        "not_ready": "El servicio aun se esta inicializando. Intenta de nuevo en un momento.",
        "permission_denied": "No tienes permiso para ejecutar esta accion.",
        "pricelist_id_invalid": "Tarifa invalida.",
        "pricelist_not_found": "Tarifa no encontrada.",
        "sync_in_progress": "Ya hay una sincronizacion en curso para este tipo.",
        "sync_token_invalid": "Token de sincronizacion invalido.",
        "unexpected_error": "No fue posible completar la operacion. Intenta de nuevo en unos momentos.",
        "filter_invalid": "El filtro de sincronizacion debe ser un objeto.",
        "filter_ambiguous": "Con varios tipos usa filters por tipo en lugar de filter o limit.",
        "filter_kind_not_requested": "Hay un filtro para un tipo que no se sincroniza.",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None, **values: object) -> str:
    message = get_message("success", key, default)
    if values:
        return message.format(**values)
    return message
