"""
Bitácora de actividad de facturas

El núcleo solo notifica: antes/después de estado y total en cada
transición. Una falla al registrar nunca interrumpe la operación principal.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

from invoicing.core.config import Settings, settings as default_settings
from invoicing.modules.invoices.models import Invoice, InvoiceActivity
from invoicing.modules.invoices.repository import InvoiceStore

logger = logging.getLogger(__name__)


class ActivityObserver(Protocol):
    def record(self, invoice: Invoice, action: str, description: str,
               old_values: Optional[Dict[str, Any]] = None,
               new_values: Optional[Dict[str, Any]] = None) -> None:
        ...


def snapshot(invoice: Invoice) -> Dict[str, Any]:
    """Valores auditados de una factura, serializables a JSON"""
    return {
        "status": invoice.status.value if invoice.status else None,
        "total_amount": str(Decimal(invoice.total_amount)) if invoice.total_amount is not None else None,
    }


class StoreActivityLog:
    """Registra InvoiceActivity en su propia unidad de trabajo, después de la transición"""

    def __init__(self, store: InvoiceStore, settings: Settings = None):
        self.store = store
        self.settings = settings or default_settings

    def record(self, invoice: Invoice, action: str, description: str,
               old_values: Optional[Dict[str, Any]] = None,
               new_values: Optional[Dict[str, Any]] = None) -> None:
        if not self.settings.INVOICE_ACTIVITY_LOG_ENABLED:
            return

        try:
            self.store.add_activity(InvoiceActivity(
                invoice_id=invoice.id,
                action=action,
                description=description,
                old_values=old_values,
                new_values=new_values
            ))
            self.store.commit()
        except Exception:
            logger.error(f"Error registrando actividad '{action}' de la factura {invoice.invoice_number}", exc_info=True)
            self.store.rollback()
