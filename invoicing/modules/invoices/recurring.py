"""
Facturación recurrente

Cuando una factura recurrente madura (next_billing_date <= ahora) se genera
una factura hija con los mismos ítems y se adelanta la próxima fecha de
facturación de la factura origen.

Generar dos veces antes de que next_billing_date avance produce dos hijas;
evitar duplicados dentro de un mismo ciclo es responsabilidad del proceso
programado que invoca generate_due_invoices.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from dateutil.relativedelta import relativedelta

from invoicing.common.money import quantize_money
from invoicing.core.clock import Clock, system_clock
from invoicing.core.config import Settings, settings as default_settings
from invoicing.modules.invoices.calculator import calculate_totals
from invoicing.modules.invoices.models import Invoice, RecurringFrequency
from invoicing.modules.invoices.repository import InvoiceStore
from invoicing.modules.invoices.schemas import LineItem

logger = logging.getLogger(__name__)


def advance_billing_date(base: datetime, frequency: Optional[str], interval: int = 1) -> datetime:
    """Sumar un ciclo de facturación; una frecuencia desconocida suma 1 mes"""
    interval = interval or 1
    if frequency == RecurringFrequency.DAILY.value:
        return base + timedelta(days=interval)
    elif frequency == RecurringFrequency.WEEKLY.value:
        return base + timedelta(weeks=interval)
    elif frequency == RecurringFrequency.MONTHLY.value:
        return base + relativedelta(months=interval)
    elif frequency == RecurringFrequency.YEARLY.value:
        return base + relativedelta(years=interval)
    return base + relativedelta(months=1)


class SnapshotPayer:
    """Pagador reconstruido con los datos desnormalizados de la factura origen"""

    def __init__(self, invoice: Invoice):
        self.payer_kind = invoice.payer_type
        self.id = invoice.payer_id
        self._name = invoice.payer_name
        self._email = invoice.payer_email

    def get_payer_name(self):
        return self._name

    def get_payer_email(self):
        return self._email

    def get_payer_address(self):
        return None

    def get_payer_metadata(self):
        # La metadata ya fusionada de la origen se copia completa vía builder.meta()
        return {}


class SnapshotInvoiceable:
    """Referencia (kind, id) al invoiceable de la factura origen"""

    def __init__(self, invoice: Invoice):
        self.invoiceable_kind = invoice.invoiceable_type
        self.id = invoice.invoiceable_id
        self._description = invoice.description or ""

    def get_invoiceable_description(self):
        return self._description

    def get_invoiceable_amount(self):
        # Sin monto declarado: la validación estricta no aplica a la hija
        return 0

    def get_invoiceable_metadata(self):
        return {}


class RecurringScheduler:
    def __init__(self, store: InvoiceStore, builder_factory: Callable = None,
                 settings: Settings = None, clock: Clock = None):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.builder_factory = builder_factory or self._default_builder

    def _default_builder(self):
        from invoicing.modules.invoices.builder import InvoiceBuilder
        return InvoiceBuilder(self.store, settings=self.settings, clock=self.clock)

    def generate_next_invoice(self, invoice: Invoice) -> Optional[Invoice]:
        """
        Generar la siguiente factura del ciclo

        Returns:
            La factura hija (pending, nuevo número, mismos ítems, parent
            apuntando a la origen) o None si la factura no es recurrente o su
            fecha de fin ya pasó.
        """
        now = self.clock.now()
        if not invoice.is_recurring:
            return None
        if invoice.recurring_end_date is not None and invoice.recurring_end_date < now:
            return None

        items = [
            LineItem(
                name=item.name,
                description=item.description,
                price=item.price,
                quantity=item.quantity,
                tax_rate=item.tax_rate,
                sku=item.sku,
                notes=item.notes
            )
            for item in invoice.items
        ]
        # El impuesto guardado incluye el de los ítems; se separa el ajuste explícito
        item_tax = calculate_totals(items).item_tax
        tax_adjustment = max(quantize_money(invoice.tax_amount) - item_tax, 0)

        # Los callbacks "on paid" de la origen no se copian: se disparan una sola
        # vez, para la factura en la que se registraron
        child = (
            self.builder_factory()
            .from_payer(SnapshotPayer(invoice))
            .pay(SnapshotInvoiceable(invoice))
            .items(items)
            .tax(tax_adjustment)
            .discount(invoice.discount_amount)
            .currency(invoice.currency)
            .description(invoice.description)
            .meta(invoice.metadata_dict)
            .due(now + timedelta(days=self.settings.INVOICE_RECURRING_DUE_DAYS))
            .without_strict_validation()
            .child_of(invoice)
            .before_commit(lambda created: self._advance(invoice))
            .create()
        )
        # El hook on_invoice_paid va al objeto vivo de la origen; si no se conoce
        # la máquina de estados lo resuelve por (kind, id) en el registry
        child.invoiceable_target = invoice.invoiceable_target
        logger.info(
            f"Recurring invoice {child.invoice_number} generated from {invoice.invoice_number}; "
            f"next billing date {invoice.next_billing_date}"
        )
        return child

    def _advance(self, invoice: Invoice) -> None:
        # Siempre hacia adelante desde el valor actual
        base = invoice.next_billing_date or self.clock.now()
        invoice.next_billing_date = advance_billing_date(
            base, invoice.recurring_frequency, invoice.recurring_interval
        )

    def generate_due_invoices(self) -> List[Invoice]:
        """Generar una factura hija por cada factura recurrente madura"""
        now = self.clock.now()
        generated = []
        for invoice in self.store.find_due_recurring(now):
            try:
                child = self.generate_next_invoice(invoice)
            except Exception:
                logger.error(f"Failed to generate invoice for {invoice.invoice_number}", exc_info=True)
                continue
            if child is not None:
                generated.append(child)

        logger.info(f"Total recurring invoices generated: {len(generated)}")
        return generated
