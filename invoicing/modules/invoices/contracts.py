"""
Contratos de los participantes externos de una factura

- Payer: quien paga (usuario, agente, empresa, ...)
- Invoiceable: lo que se factura (orden, suscripción, recarga, ...)

La identidad de cada participante es el par explícito (kind, id); no se
deduce del tipo Python del objeto.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from invoicing.modules.invoices.exceptions import InvalidParticipant


@runtime_checkable
class Payer(Protocol):
    payer_kind: str
    id: Any

    def get_payer_name(self) -> str:
        ...

    def get_payer_email(self) -> Optional[str]:
        ...

    def get_payer_address(self) -> Optional[str]:
        ...

    def get_payer_metadata(self) -> Dict[str, Any]:
        ...


@runtime_checkable
class Invoiceable(Protocol):
    """
    Objeto facturable. Puede exponer además un hook opcional
    ``on_invoice_paid(invoice)`` que se invoca una sola vez cuando la
    factura pasa a pagada.
    """
    invoiceable_kind: str
    id: Any

    def get_invoiceable_description(self) -> str:
        ...

    def get_invoiceable_amount(self) -> Decimal:
        ...

    def get_invoiceable_metadata(self) -> Dict[str, Any]:
        ...


def require_payer(obj: Any) -> Payer:
    if not isinstance(obj, Payer):
        raise InvalidParticipant("Payer", obj)
    return obj


def require_invoiceable(obj: Any) -> Invoiceable:
    if not isinstance(obj, Invoiceable):
        raise InvalidParticipant("Invoiceable", obj)
    return obj


class InvoiceableRegistry:
    """
    Resuelve el objeto invoiceable de una factura cargada desde la base de
    datos a partir de su par (invoiceable_type, invoiceable_id).

    Cada kind registra un loader: ``registry.register("topup", load_topup)``.
    """

    def __init__(self):
        self._loaders: Dict[str, Callable[[str], Optional[Invoiceable]]] = {}

    def register(self, kind: str, loader: Callable[[str], Optional[Invoiceable]]) -> None:
        self._loaders[kind] = loader

    def resolve(self, kind: str, invoiceable_id: str) -> Optional[Invoiceable]:
        loader = self._loaders.get(kind)
        if loader is None:
            return None
        return loader(invoiceable_id)
