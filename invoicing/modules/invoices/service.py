"""
Servicio de facturación

Punto de entrada del módulo. Conecta los componentes del núcleo sobre un
mismo almacenamiento:

- InvoiceBuilder: construcción y numeración
- InvoiceStateMachine: transiciones de estado y callbacks
- PaymentLedger: pagos y liquidación automática
- RecurringScheduler: facturación recurrente

Además expone consultas (pendientes, pagadas, vencidas, por pagador o
invoiceable), estadísticas y eliminación lógica.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session

from invoicing.core.clock import Clock, system_clock
from invoicing.core.config import Settings, settings as default_settings
from invoicing.core.locks import KeyedLocks, default_locks
from invoicing.modules.invoices.activity import ActivityObserver, StoreActivityLog, snapshot
from invoicing.modules.invoices.builder import InvoiceBuilder
from invoicing.modules.invoices.contracts import Invoiceable, InvoiceableRegistry, Payer
from invoicing.modules.invoices.exceptions import InvoiceNotFound
from invoicing.modules.invoices.ledger import PaymentLedger
from invoicing.modules.invoices.models import Invoice, InvoicePayment, InvoiceStatus
from invoicing.modules.invoices.numbering import InvoiceNumberSequencer
from invoicing.modules.invoices.recurring import RecurringScheduler
from invoicing.modules.invoices.repository import InvoiceStore, PartyRef, SqlAlchemyInvoiceStore
from invoicing.modules.invoices.state_machine import InvoiceStateMachine
from invoicing.modules.invoices.schemas import (
    InvoiceDetail, InvoiceItemOut, InvoiceStats, PartyStats, PaymentCreate, PaymentOut
)

logger = logging.getLogger(__name__)

InvoiceRef = Union[Invoice, UUID, str]


class InvoiceService:
    """Servicio para gestión del ciclo de vida de facturas"""

    def __init__(self, db: Session = None, store: InvoiceStore = None, settings: Settings = None,
                 clock: Clock = None, locks: KeyedLocks = None,
                 registry: InvoiceableRegistry = None, observer: ActivityObserver = None):
        if store is None:
            if db is None:
                raise ValueError("Se requiere una sesión de base de datos o un InvoiceStore")
            store = SqlAlchemyInvoiceStore(db)

        self.store = store
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.locks = locks or default_locks
        self.registry = registry or InvoiceableRegistry()
        self.observer = observer or StoreActivityLog(self.store, self.settings)
        self.sequencer = InvoiceNumberSequencer(settings=self.settings)

        self.state_machine = InvoiceStateMachine(
            self.store, settings=self.settings, clock=self.clock,
            observer=self.observer, registry=self.registry
        )
        self.ledger = PaymentLedger(self.store, self.state_machine, clock=self.clock, locks=self.locks)
        self.scheduler = RecurringScheduler(
            self.store, builder_factory=self.builder, settings=self.settings, clock=self.clock
        )

    # ===== CONSTRUCCIÓN =====

    def builder(self, payer: Payer = None, invoiceable: Invoiceable = None) -> InvoiceBuilder:
        """Nuevo builder que comparte almacenamiento, reloj y locks con el servicio"""
        builder = InvoiceBuilder(
            self.store,
            payer=payer,
            settings=self.settings,
            clock=self.clock,
            locks=self.locks,
            sequencer=self.sequencer,
            observer=self.observer
        )
        if invoiceable is not None:
            builder.pay(invoiceable)
        return builder

    def create_invoice(self, payer: Payer, invoiceable: Invoiceable, amount: Any,
                       description: str = None, tax: Any = None, discount: Any = None,
                       currency: str = None, due_date: datetime = None,
                       metadata: Dict[str, Any] = None, callback: Callable = None) -> Invoice:
        """Creación rápida: un solo ítem por el monto dado"""
        builder = self.builder(payer, invoiceable).item(
            description or invoiceable.get_invoiceable_description(), amount
        )
        if tax is not None:
            builder.tax(tax)
        if discount is not None:
            builder.discount(discount)
        if currency:
            builder.currency(currency)
        if due_date is not None:
            builder.due(due_date)
        if metadata:
            builder.meta(metadata)
        if callback is not None:
            builder.after(callback)
        return builder.create()

    # ===== ESTADOS =====

    def mark_as_paid(self, invoice: InvoiceRef) -> Invoice:
        return self.state_machine.mark_as_paid(self._resolve(invoice))

    def cancel(self, invoice: InvoiceRef) -> Invoice:
        return self.state_machine.cancel(self._resolve(invoice))

    def mark_as_failed(self, invoice: InvoiceRef) -> Invoice:
        return self.state_machine.mark_as_failed(self._resolve(invoice))

    def refund(self, invoice: InvoiceRef) -> Invoice:
        return self.state_machine.refund(self._resolve(invoice))

    # ===== PAGOS =====

    def add_payment(self, invoice: InvoiceRef, amount: Any, method: str,
                    reference: Optional[str] = None, notes: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> InvoicePayment:
        return self.ledger.add_payment(
            self._resolve(invoice), amount, method,
            reference=reference, notes=notes, metadata=metadata
        )

    def record_payment(self, invoice: InvoiceRef, payment_data: PaymentCreate) -> InvoicePayment:
        """Registrar un pago a partir del schema de entrada"""
        return self.add_payment(
            invoice,
            payment_data.amount,
            payment_data.payment_method,
            reference=payment_data.reference_number,
            notes=payment_data.notes,
            metadata=payment_data.metadata
        )

    def get_paid_amount(self, invoice: InvoiceRef) -> Decimal:
        return self.ledger.get_paid_amount(self._resolve(invoice))

    def get_remaining_amount(self, invoice: InvoiceRef) -> Decimal:
        return self.ledger.get_remaining_amount(self._resolve(invoice))

    def is_fully_paid(self, invoice: InvoiceRef) -> bool:
        return self.ledger.is_fully_paid(self._resolve(invoice))

    # ===== RECURRENCIA =====

    def generate_next_invoice(self, invoice: InvoiceRef) -> Optional[Invoice]:
        return self.scheduler.generate_next_invoice(self._resolve(invoice))

    def generate_due_invoices(self) -> List[Invoice]:
        return self.scheduler.generate_due_invoices()

    # ===== CONSULTAS =====

    def find(self, invoice_id: Union[UUID, str], include_deleted: bool = False) -> Optional[Invoice]:
        return self.store.get(self._as_uuid(invoice_id), include_deleted=include_deleted)

    def find_by_number(self, invoice_number: str) -> Optional[Invoice]:
        return self.store.get_by_number(invoice_number)

    def get_invoice(self, invoice_id: Union[UUID, str]) -> Invoice:
        """Obtener factura por ID o lanzar InvoiceNotFound"""
        invoice = self.find(invoice_id)
        if not invoice:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def pending(self) -> List[Invoice]:
        return self.store.find_invoices(status=InvoiceStatus.PENDING)

    def paid(self) -> List[Invoice]:
        return self.store.find_invoices(status=InvoiceStatus.PAID)

    def failed(self) -> List[Invoice]:
        return self.store.find_invoices(status=InvoiceStatus.FAILED)

    def overdue(self) -> List[Invoice]:
        return self.store.find_invoices(overdue_at=self.clock.now())

    def for_payer(self, payer: Union[Payer, PartyRef],
                  status: Union[InvoiceStatus, str] = None) -> List[Invoice]:
        return self.store.find_invoices(
            status=InvoiceStatus(status) if status else None,
            payer=self._party_ref(payer, "payer_kind")
        )

    def for_invoiceable(self, invoiceable: Union[Invoiceable, PartyRef],
                        status: Union[InvoiceStatus, str] = None) -> List[Invoice]:
        return self.store.find_invoices(
            status=InvoiceStatus(status) if status else None,
            invoiceable=self._party_ref(invoiceable, "invoiceable_kind")
        )

    def serialize(self, invoice: InvoiceRef) -> InvoiceDetail:
        """Factura con ítems, pagos y saldo"""
        invoice = self._resolve(invoice)
        paid_amount = self.ledger.get_paid_amount(invoice)
        detail = InvoiceDetail.model_validate(invoice)
        return detail.model_copy(update={
            "items": [InvoiceItemOut.model_validate(item) for item in invoice.items],
            "payments": [PaymentOut.model_validate(p) for p in self.store.list_payments(invoice.id)],
            "paid_amount": paid_amount,
            "remaining_amount": self.ledger.get_remaining_amount(invoice)
        })

    # ===== ESTADÍSTICAS =====

    def stats(self) -> InvoiceStats:
        """Resumen global de facturas no eliminadas"""
        total, _ = self.store.summarize()
        pending, pending_revenue = self.store.summarize(status=InvoiceStatus.PENDING)
        paid, total_revenue = self.store.summarize(status=InvoiceStatus.PAID)
        failed, _ = self.store.summarize(status=InvoiceStatus.FAILED)
        overdue, _ = self.store.summarize(overdue_at=self.clock.now())

        return InvoiceStats(
            total=total,
            pending=pending,
            paid=paid,
            overdue=overdue,
            failed=failed,
            total_revenue=total_revenue,
            pending_revenue=pending_revenue
        )

    def payer_stats(self, payer: Union[Payer, PartyRef]) -> PartyStats:
        return self._party_stats(payer=self._party_ref(payer, "payer_kind"))

    def invoiceable_stats(self, invoiceable: Union[Invoiceable, PartyRef]) -> PartyStats:
        return self._party_stats(invoiceable=self._party_ref(invoiceable, "invoiceable_kind"))

    def _party_stats(self, **party: PartyRef) -> PartyStats:
        total, _ = self.store.summarize(**party)
        paid, total_paid = self.store.summarize(status=InvoiceStatus.PAID, **party)
        pending, total_pending = self.store.summarize(status=InvoiceStatus.PENDING, **party)
        overdue, total_overdue = self.store.summarize(overdue_at=self.clock.now(), **party)

        return PartyStats(
            total_invoices=total,
            paid_invoices=paid,
            pending_invoices=pending,
            overdue_invoices=overdue,
            total_paid=total_paid,
            total_pending=total_pending,
            total_overdue=total_overdue
        )

    # ===== ELIMINACIÓN LÓGICA =====

    def delete(self, invoice: InvoiceRef) -> Invoice:
        """Eliminar factura (soft delete); ítems, pagos e historial se conservan"""
        invoice = self._resolve(invoice)
        old_values = snapshot(invoice)
        try:
            invoice.soft_delete(self.clock.now())
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info(f"Invoice {invoice.invoice_number} deleted")
        self._record(invoice, "deleted", f"Factura {invoice.invoice_number} eliminada", old_values=old_values)
        return invoice

    def restore(self, invoice: InvoiceRef) -> Invoice:
        """Restaurar factura eliminada"""
        if not isinstance(invoice, Invoice):
            invoice_id = invoice
            invoice = self.store.get(self._as_uuid(invoice_id), include_deleted=True)
            if not invoice:
                raise InvoiceNotFound(invoice_id)
        try:
            invoice.restore()
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info(f"Invoice {invoice.invoice_number} restored")
        self._record(invoice, "restored", f"Factura {invoice.invoice_number} restaurada", new_values=snapshot(invoice))
        return invoice

    def _record(self, invoice: Invoice, action: str, description: str, **values: Dict[str, Any]) -> None:
        try:
            self.observer.record(invoice, action, description, **values)
        except Exception:
            logger.error(f"Activity observer error for invoice {invoice.invoice_number}", exc_info=True)

    # ===== HELPERS =====

    def _resolve(self, invoice: InvoiceRef) -> Invoice:
        if isinstance(invoice, Invoice):
            return invoice
        return self.get_invoice(invoice)

    @staticmethod
    def _as_uuid(invoice_id: Union[UUID, str]) -> UUID:
        if isinstance(invoice_id, UUID):
            return invoice_id
        try:
            return UUID(str(invoice_id))
        except ValueError:
            raise InvoiceNotFound(invoice_id)

    @staticmethod
    def _party_ref(party: Any, kind_attr: str) -> Tuple[str, str]:
        if isinstance(party, tuple):
            kind, party_id = party
            return kind, str(party_id)
        return getattr(party, kind_attr), str(party.id)
