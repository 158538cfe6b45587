"""
Construcción de facturas

Uso:

    invoice = (
        InvoiceBuilder(store)
        .from_payer(user)
        .pay(topup)
        .item("Recarga", 100000)
        .tax(15000)
        .on_paid(lambda inv: topup.credit())
        .create()
    )

create() valida en este orden: pagador, invoiceable, ítems, montos
(calculator) y conciliación estricta contra el monto declarado por el
invoiceable. Luego asigna número y persiste cabecera + ítems en un solo
commit.
"""

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from invoicing.common.money import quantize_money, ZERO
from invoicing.core.clock import Clock, system_clock
from invoicing.core.config import Settings, settings as default_settings
from invoicing.core.locks import KeyedLocks, default_locks
from invoicing.modules.invoices.activity import ActivityObserver, StoreActivityLog, snapshot
from invoicing.modules.invoices.calculator import calculate_totals, validate_adjustment
from invoicing.modules.invoices.contracts import Invoiceable, Payer, require_invoiceable, require_payer
from invoicing.modules.invoices.exceptions import (
    AmountMismatch, InvoiceNumberCollision, MissingInvoiceable, MissingPayer, NoItems
)
from invoicing.modules.invoices.models import Invoice, InvoiceItem, InvoiceStatus, RecurringFrequency
from invoicing.modules.invoices.numbering import InvoiceNumberSequencer
from invoicing.modules.invoices.recurring import advance_billing_date
from invoicing.modules.invoices.repository import InvoiceStore, NumberConflict
from invoicing.modules.invoices.schemas import InvoiceTotals, LineItem

logger = logging.getLogger(__name__)

InvoiceCallback = Callable[[Invoice], Any]


class InvoiceBuilder:
    def __init__(self, store: InvoiceStore, payer: Payer = None, settings: Settings = None,
                 clock: Clock = None, locks: KeyedLocks = None,
                 sequencer: InvoiceNumberSequencer = None, observer: ActivityObserver = None):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.locks = locks or default_locks
        self.sequencer = sequencer or InvoiceNumberSequencer(settings=self.settings)
        self.observer = observer or StoreActivityLog(store, self.settings)

        self._payer: Optional[Payer] = None
        self._invoiceable: Optional[Invoiceable] = None
        self._items: List[LineItem] = []
        self._tax = ZERO
        self._discount = ZERO
        self._currency = self.settings.INVOICE_CURRENCY
        self._status = InvoiceStatus.PENDING
        self._due_date: Optional[datetime] = None
        self._description: Optional[str] = None
        self._metadata: Dict[str, Any] = {}
        self._strict = self.settings.INVOICE_STRICT_VALIDATION
        self._include_invoiceable_item = self.settings.INVOICE_AUTO_INVOICEABLE_ITEM
        self._is_recurring = False
        self._frequency: Optional[str] = None
        self._interval = 1
        self._end_date: Optional[datetime] = None
        self._parent: Optional[Invoice] = None
        self._after_create: List[InvoiceCallback] = []
        self._after_paid: List[InvoiceCallback] = []
        self._before_commit: List[InvoiceCallback] = []

        if payer is not None:
            self.from_payer(payer)

    # ===== PARTICIPANTES =====

    def from_payer(self, payer: Payer) -> "InvoiceBuilder":
        self._payer = require_payer(payer)
        return self

    def by(self, payer: Payer) -> "InvoiceBuilder":
        return self.from_payer(payer)

    def pay(self, invoiceable: Invoiceable) -> "InvoiceBuilder":
        self._invoiceable = require_invoiceable(invoiceable)
        return self

    def to(self, invoiceable: Invoiceable) -> "InvoiceBuilder":
        return self.pay(invoiceable)

    # ===== ÍTEMS =====

    def item(self, name: str, price: Any, quantity: int = 1, tax_rate: Any = 0,
             description: str = None, sku: str = None, notes: str = None) -> "InvoiceBuilder":
        return self.add_item(LineItem(
            name=name,
            price=price,
            quantity=quantity,
            tax_rate=tax_rate,
            description=description,
            sku=sku,
            notes=notes
        ))

    def add_item(self, item: LineItem) -> "InvoiceBuilder":
        self._items.append(item)
        return self

    def items(self, items: Iterable[Union[LineItem, Mapping[str, Any]]]) -> "InvoiceBuilder":
        """Agregar varios ítems; los mappings deben usar exactamente los campos de LineItem"""
        for item in items:
            if isinstance(item, LineItem):
                self.add_item(item)
            elif isinstance(item, Mapping):
                self.add_item(LineItem(**item))
            else:
                raise TypeError(f"Ítem no soportado: {type(item).__name__}")
        return self

    def with_invoiceable_item(self, enabled: bool = True) -> "InvoiceBuilder":
        """Agregar el monto declarado por el invoiceable como un ítem (cantidad 1)"""
        self._include_invoiceable_item = enabled
        return self

    # ===== MONTOS Y DATOS =====

    def tax(self, amount: Any) -> "InvoiceBuilder":
        self._tax = validate_adjustment("impuesto", amount)
        return self

    def discount(self, amount: Any) -> "InvoiceBuilder":
        self._discount = validate_adjustment("descuento", amount)
        return self

    def currency(self, currency: str) -> "InvoiceBuilder":
        self._currency = currency.upper()
        return self

    def status(self, status: Union[InvoiceStatus, str]) -> "InvoiceBuilder":
        self._status = InvoiceStatus(status)
        return self

    def due(self, due_date: Union[datetime, date, str]) -> "InvoiceBuilder":
        if isinstance(due_date, str):
            due_date = datetime.fromisoformat(due_date)
        elif not isinstance(due_date, datetime):
            due_date = datetime.combine(due_date, time.min)
        self._due_date = due_date
        return self

    def description(self, description: Optional[str]) -> "InvoiceBuilder":
        self._description = description
        return self

    def meta(self, metadata: Mapping[str, Any]) -> "InvoiceBuilder":
        self._metadata.update(metadata)
        return self

    def without_strict_validation(self) -> "InvoiceBuilder":
        self._strict = False
        return self

    def make_recurring(self, frequency: Union[RecurringFrequency, str] = RecurringFrequency.MONTHLY,
                       end_date: datetime = None, interval: int = 1) -> "InvoiceBuilder":
        if interval < 1:
            raise ValueError('El intervalo de recurrencia debe ser al menos 1')
        self._is_recurring = True
        self._frequency = getattr(frequency, "value", frequency)
        self._interval = interval
        self._end_date = end_date
        return self

    def child_of(self, parent: Invoice) -> "InvoiceBuilder":
        self._parent = parent
        return self

    # ===== CALLBACKS =====

    def after(self, callback: InvoiceCallback) -> "InvoiceBuilder":
        """Ejecutar después de crear la factura"""
        self._after_create.append(callback)
        return self

    def on_paid(self, callback: InvoiceCallback) -> "InvoiceBuilder":
        """Ejecutar cuando la factura pase a pagada (solo en memoria, no se persiste)"""
        self._after_paid.append(callback)
        return self

    def when_paid(self, callback: InvoiceCallback) -> "InvoiceBuilder":
        return self.on_paid(callback)

    def before_commit(self, hook: InvoiceCallback) -> "InvoiceBuilder":
        """Cambios adicionales que deben confirmarse en el mismo commit que la factura"""
        self._before_commit.append(hook)
        return self

    # ===== CREACIÓN =====

    def calculate(self) -> InvoiceTotals:
        """Totales que tendría la factura, sin persistir nada"""
        return calculate_totals(self._collect_items(), self._tax, self._discount)

    def create(self) -> Invoice:
        """Validar, numerar y persistir la factura"""
        if self._payer is None:
            raise MissingPayer()
        if self._invoiceable is None:
            raise MissingInvoiceable()

        items = self._collect_items()
        if not items:
            raise NoItems()

        totals = calculate_totals(items, self._tax, self._discount)
        self._validate_expected_amount(totals)

        now = self.clock.now()
        invoice = self._persist(items, totals, now)

        invoice.pending_callbacks = list(self._after_paid)
        invoice.invoiceable_target = self._invoiceable

        logger.info(
            f"Invoice {invoice.invoice_number} created for {invoice.payer_type}:{invoice.payer_id} "
            f"total {invoice.currency} {invoice.total_amount}"
        )
        self._record_created(invoice)
        self._execute_after_create(invoice)
        return invoice

    def _collect_items(self) -> List[LineItem]:
        items = list(self._items)
        if self._include_invoiceable_item and self._invoiceable is not None:
            amount = quantize_money(self._invoiceable.get_invoiceable_amount() or 0)
            if amount > 0:
                items.insert(0, LineItem(
                    name=self._invoiceable.get_invoiceable_description(),
                    price=amount,
                    quantity=1
                ))
        return items

    def _validate_expected_amount(self, totals: InvoiceTotals) -> None:
        if not self._strict:
            return

        expected = quantize_money(self._invoiceable.get_invoiceable_amount() or 0)
        if expected <= 0:
            return

        if abs(expected - totals.total) > Decimal(self.settings.INVOICE_AMOUNT_TOLERANCE):
            raise AmountMismatch(expected, totals.total)

    def _persist(self, items: List[LineItem], totals: InvoiceTotals, now: datetime) -> Invoice:
        scope = self.sequencer.scope_for(now)
        attempts = self.settings.INVOICE_NUMBER_MAX_ATTEMPTS

        # Consulta del último número + inserción: sección crítica por ámbito.
        # Entre procesos la restricción UNIQUE rechaza el duplicado y se reintenta.
        with self.locks.hold(f"number:{scope}"):
            for attempt in range(1, attempts + 1):
                invoice = self._build_invoice(items, totals, now)
                invoice.invoice_number = self.sequencer.next_number(
                    scope, self.store.get_last_invoice_number(scope)
                )
                try:
                    self.store.add_invoice(invoice)
                    for hook in self._before_commit:
                        hook(invoice)
                    self.store.commit()
                    return invoice
                except NumberConflict:
                    logger.warning(
                        f"Invoice number {invoice.invoice_number} already taken (attempt {attempt}/{attempts})"
                    )
                except Exception:
                    self.store.rollback()
                    raise

        raise InvoiceNumberCollision(scope, attempts)

    def _build_invoice(self, items: List[LineItem], totals: InvoiceTotals, now: datetime) -> Invoice:
        invoice = Invoice(
            payer_type=self._payer.payer_kind,
            payer_id=str(self._payer.id),
            payer_name=self._payer.get_payer_name(),
            payer_email=self._payer.get_payer_email(),
            invoiceable_type=self._invoiceable.invoiceable_kind,
            invoiceable_id=str(self._invoiceable.id),
            description=self._description,
            subtotal_amount=totals.subtotal,
            tax_amount=totals.tax,
            discount_amount=totals.discount,
            total_amount=totals.total,
            currency=self._currency,
            status=self._status,
            due_date=self._due_date or now + timedelta(days=self.settings.INVOICE_DUE_DATE_DAYS),
            paid_at=now if self._status == InvoiceStatus.PAID else None,
            metadata_=self._merged_metadata(),
            is_recurring=self._is_recurring,
            recurring_interval=self._interval,
            parent_invoice_id=self._parent.id if self._parent is not None else None
        )

        if self._is_recurring:
            invoice.recurring_frequency = self._frequency
            invoice.recurring_end_date = self._end_date
            invoice.next_billing_date = advance_billing_date(now, self._frequency, self._interval)

        invoice.items = [
            InvoiceItem(
                position=position,
                name=item.name,
                description=item.display_description,
                price=item.price,
                quantity=item.quantity,
                tax_rate=item.tax_rate,
                subtotal=item.subtotal,
                sku=item.sku,
                notes=item.notes
            )
            for position, item in enumerate(items)
        ]
        return invoice

    def _merged_metadata(self) -> Dict[str, Any]:
        # Orden de precedencia: builder < pagador < invoiceable
        merged = dict(self._metadata)
        merged.update(self._payer.get_payer_metadata() or {})
        merged.update(self._invoiceable.get_invoiceable_metadata() or {})
        return merged

    def _record_created(self, invoice: Invoice) -> None:
        try:
            self.observer.record(
                invoice, "created", f"Factura {invoice.invoice_number} creada",
                new_values=snapshot(invoice)
            )
        except Exception:
            logger.error(f"Activity observer error for invoice {invoice.invoice_number}", exc_info=True)

    def _execute_after_create(self, invoice: Invoice) -> None:
        if not self.settings.INVOICE_CALLBACKS_ENABLED:
            return

        for callback in self._after_create:
            try:
                callback(invoice)
            except Exception:
                logger.error(f"Invoice after-create callback error ({invoice.invoice_number})", exc_info=True)
