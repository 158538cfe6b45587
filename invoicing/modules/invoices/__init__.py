"""
Módulo de Facturación (Invoices)

Ciclo de vida de una factura:

- Construcción fluida a partir de ítems (InvoiceBuilder)
- Conciliación de montos: subtotal, impuestos, descuento y total en Decimal
- Numeración secuencial por fecha sin colisiones (INV-20240115-0001)
- Máquina de estados: pending -> paid -> refunded; cancelled desde cualquier
  estado excepto paid; failed desde cualquiera
- Pagos parciales y liquidación automática
- Facturación recurrente (diaria, semanal, mensual, anual)
- Bitácora de actividad y eliminación lógica

Los participantes (pagador e invoiceable) se consumen mediante los
contratos Payer / Invoiceable; el almacenamiento mediante InvoiceStore.

Tablas principales:
- invoices: Facturas
- invoice_items: Ítems de factura
- invoice_payments: Pagos de facturas
- invoice_activities: Bitácora de cambios
"""

from .models import Invoice, InvoiceItem, InvoicePayment, InvoiceActivity, InvoiceStatus, RecurringFrequency
from .schemas import LineItem, InvoiceTotals, PaymentCreate, InvoiceOut, InvoiceDetail, InvoiceStats, PartyStats
from .contracts import Payer, Invoiceable, InvoiceableRegistry
from .builder import InvoiceBuilder
from .state_machine import InvoiceStateMachine
from .ledger import PaymentLedger
from .recurring import RecurringScheduler
from .repository import InvoiceStore, SqlAlchemyInvoiceStore
from .service import InvoiceService

__all__ = [
    "Invoice", "InvoiceItem", "InvoicePayment", "InvoiceActivity", "InvoiceStatus", "RecurringFrequency",
    "LineItem", "InvoiceTotals", "PaymentCreate", "InvoiceOut", "InvoiceDetail", "InvoiceStats", "PartyStats",
    "Payer", "Invoiceable", "InvoiceableRegistry",
    "InvoiceBuilder", "InvoiceStateMachine", "PaymentLedger", "RecurringScheduler",
    "InvoiceStore", "SqlAlchemyInvoiceStore",
    "InvoiceService"
]
