"""
Máquina de estados de la factura

    pending         -> paid
    paid            -> refunded
    (excepto paid)  -> cancelled
    (cualquiera)    -> failed

"overdue" no es un estado almacenado (ver Invoice.is_overdue). Cada
transición es un único commit; la bitácora y los callbacks se ejecutan
después y sus fallas solo se registran en el log.
"""

import logging
from typing import Any, Dict, Optional

from invoicing.core.clock import Clock, system_clock
from invoicing.core.config import Settings, settings as default_settings
from invoicing.modules.invoices.activity import ActivityObserver, StoreActivityLog, snapshot
from invoicing.modules.invoices.contracts import InvoiceableRegistry
from invoicing.modules.invoices.exceptions import (
    AlreadyPaid, CannotCancelPaid, CannotRefundUnpaid, InvalidStatusTransition
)
from invoicing.modules.invoices.models import Invoice, InvoiceStatus
from invoicing.modules.invoices.repository import InvoiceStore

logger = logging.getLogger(__name__)


class InvoiceStateMachine:
    def __init__(self, store: InvoiceStore, settings: Settings = None, clock: Clock = None,
                 observer: ActivityObserver = None, registry: InvoiceableRegistry = None):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.observer = observer or StoreActivityLog(store, self.settings)
        self.registry = registry

    def mark_as_paid(self, invoice: Invoice) -> Invoice:
        """
        Marcar como pagada y ejecutar callbacks

        Solo desde pending. Tras confirmar el cambio ejecuta, en orden, los
        callbacks "on paid" registrados en memoria y luego el hook
        on_invoice_paid del invoiceable (si existe), una sola vez.
        """
        if invoice.is_paid():
            raise AlreadyPaid(invoice.invoice_number)
        if not invoice.is_pending():
            raise InvalidStatusTransition(invoice.status, InvoiceStatus.PAID)

        self._transition(invoice, InvoiceStatus.PAID, paid_at=self.clock.now())

        self._execute_callbacks(invoice)
        self._notify_invoiceable(invoice)
        return invoice

    def cancel(self, invoice: Invoice) -> Invoice:
        """Cancelar factura; cualquier estado excepto pagada"""
        if invoice.is_paid():
            raise CannotCancelPaid(invoice.invoice_number)

        return self._transition(invoice, InvoiceStatus.CANCELLED)

    def mark_as_failed(self, invoice: Invoice) -> Invoice:
        """Marcar como fallida, sin precondiciones de estado"""
        return self._transition(invoice, InvoiceStatus.FAILED)

    def refund(self, invoice: Invoice) -> Invoice:
        """Reembolsar factura pagada"""
        if not invoice.is_paid():
            raise CannotRefundUnpaid(invoice.invoice_number)

        return self._transition(invoice, InvoiceStatus.REFUNDED)

    def _transition(self, invoice: Invoice, target: InvoiceStatus, **changes: Any) -> Invoice:
        old_values = snapshot(invoice)

        # Cualquier cambio pendiente en la sesión (ej. el pago que liquida la
        # factura) se confirma en este mismo commit.
        try:
            invoice.status = target
            for field, value in changes.items():
                setattr(invoice, field, value)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        new_values = snapshot(invoice)
        logger.info(
            f"Invoice {invoice.invoice_number} status changed from {old_values['status']} to {new_values['status']}"
        )
        self._record(invoice, old_values, new_values)
        return invoice

    def _record(self, invoice: Invoice, old_values: Dict[str, Any], new_values: Dict[str, Any]) -> None:
        try:
            self.observer.record(
                invoice,
                "status_changed",
                f"Estado cambiado de {old_values['status']} a {new_values['status']}",
                old_values=old_values,
                new_values=new_values
            )
        except Exception:
            logger.error(f"Activity observer error for invoice {invoice.invoice_number}", exc_info=True)

    def _execute_callbacks(self, invoice: Invoice) -> None:
        if not self.settings.INVOICE_CALLBACKS_ENABLED:
            return

        callbacks = list(invoice.pending_callbacks)
        # Se disparan una sola vez
        invoice.pending_callbacks = []
        for callback in callbacks:
            try:
                callback(invoice)
            except Exception:
                # Registrar el error sin afectar el pago
                logger.error(f"Invoice callback error ({invoice.invoice_number})", exc_info=True)

    def _resolve_invoiceable(self, invoice: Invoice) -> Optional[Any]:
        if invoice.invoiceable_target is not None:
            return invoice.invoiceable_target
        if self.registry is None:
            return None
        return self.registry.resolve(invoice.invoiceable_type, invoice.invoiceable_id)

    def _notify_invoiceable(self, invoice: Invoice) -> None:
        try:
            target = self._resolve_invoiceable(invoice)
            hook = getattr(target, "on_invoice_paid", None)
            if callable(hook):
                hook(invoice)
        except Exception:
            logger.error(f"Invoiceable on_invoice_paid error ({invoice.invoice_number})", exc_info=True)
