from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Mapping


PRICE_LIST = "priceList"
SALES_REP = "salesRep"
PRODUCT = "product"
CLIENT = "client"
ORDER = "order"
PRICE_LIST_ITEM = "priceListItem"

ENTITY_KINDS = (PRICE_LIST, SALES_REP, PRODUCT, CLIENT, ORDER, PRICE_LIST_ITEM)


@dataclass(frozen=True)
class ExternalEntity:
    external_id: Any
    attributes: Mapping[str, Any] = field(default_factory=dict)


class ErpGatewayError(RuntimeError):
    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None


class RemoteUnavailable(ErpGatewayError):
    """Transport, authentication or timeout failure. Fatal to a run or mutation."""


class RemoteRejected(ErpGatewayError):
    """The ERP refused one specific call, usually a validation error."""


class UnknownEntityKind(ValueError):
    pass


def require_entity_kind(kind: str) -> str:
    if kind not in ENTITY_KINDS:
        raise UnknownEntityKind(f"Tipo de entidad no soportado: {kind}")
    return kind


class ErpGateway(ABC):
    @abstractmethod
    def authenticate(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def list(self, kind: str, filter: Mapping[str, Any] | None = None) -> List[ExternalEntity]:
        raise NotImplementedError

    @abstractmethod
    def create(self, kind: str, attributes: Mapping[str, Any]) -> int:
        raise NotImplementedError

    @abstractmethod
    def update(self, kind: str, external_id: int, attributes: Mapping[str, Any]) -> None:
        raise NotImplementedError
