import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from invoicing.common.money import quantize_money, ZERO
from invoicing.core.clock import Clock, system_clock
from invoicing.core.locks import KeyedLocks, default_locks
from invoicing.modules.invoices.exceptions import (
    AlreadyPaid, InvalidPaymentAmount, InvalidStatusTransition, PaymentExceedsRemaining
)
from invoicing.modules.invoices.models import Invoice, InvoicePayment, InvoiceStatus
from invoicing.modules.invoices.repository import InvoiceStore
from invoicing.modules.invoices.state_machine import InvoiceStateMachine

logger = logging.getLogger(__name__)


class PaymentLedger:
    """
    Pagos de una factura

    Los montos pagado/pendiente se recalculan desde el almacenamiento en cada
    llamada; no hay contadores en memoria. Los pagos de una misma factura se
    serializan con un lock por factura dentro del proceso y con un bloqueo de
    fila (SELECT ... FOR UPDATE) entre procesos.
    """

    def __init__(self, store: InvoiceStore, state_machine: InvoiceStateMachine,
                 clock: Clock = None, locks: KeyedLocks = None):
        self.store = store
        self.state_machine = state_machine
        self.clock = clock or system_clock
        self.locks = locks or default_locks

    def get_paid_amount(self, invoice: Invoice) -> Decimal:
        return self.store.sum_payments(invoice.id)

    def get_remaining_amount(self, invoice: Invoice) -> Decimal:
        remaining = quantize_money(invoice.total_amount) - self.get_paid_amount(invoice)
        return max(remaining, ZERO)

    def is_fully_paid(self, invoice: Invoice) -> bool:
        return self.get_remaining_amount(invoice) <= 0

    def add_payment(self, invoice: Invoice, amount: Any, method: str,
                    reference: Optional[str] = None, notes: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> InvoicePayment:
        """
        Registrar un pago

        Args:
            invoice: Factura pendiente
            amount: Monto > 0, no mayor al saldo pendiente
            method: Método de pago (transferencia, tarjeta, ...)
            reference: Número de referencia opcional
            notes: Notas opcionales
            metadata: Datos adicionales del pago

        Returns:
            El pago registrado. Si el saldo queda en 0 la factura pasa a pagada
            en el mismo commit.
        """
        payment_amount = quantize_money(amount)
        if payment_amount <= 0:
            raise InvalidPaymentAmount(amount)

        with self.locks.hold(f"invoice:{invoice.id}"):
            # Entre procesos: la fila queda bloqueada hasta el commit o rollback
            invoice = self.store.lock_invoice(invoice)
            try:
                if invoice.is_paid():
                    raise AlreadyPaid(invoice.invoice_number)
                if not invoice.is_pending():
                    raise InvalidStatusTransition(invoice.status, InvoiceStatus.PAID)

                remaining = self.get_remaining_amount(invoice)
                if payment_amount > remaining:
                    raise PaymentExceedsRemaining(payment_amount, remaining)
            except (AlreadyPaid, InvalidStatusTransition, PaymentExceedsRemaining):
                self.store.rollback()
                raise

            try:
                payment = self.store.add_payment(InvoicePayment(
                    invoice_id=invoice.id,
                    amount=payment_amount,
                    payment_method=method,
                    reference_number=reference,
                    notes=notes,
                    metadata_=metadata or {},
                    paid_at=self.clock.now()
                ))
            except Exception:
                self.store.rollback()
                raise

            logger.info(
                f"Payment of {payment_amount} ({method}) registered for invoice {invoice.invoice_number}; "
                f"remaining {remaining - payment_amount}"
            )

            if remaining - payment_amount <= 0:
                # Liquidación automática: pago + cambio de estado en un commit
                self.state_machine.mark_as_paid(invoice)
            else:
                try:
                    self.store.commit()
                except Exception:
                    self.store.rollback()
                    raise

        return payment
