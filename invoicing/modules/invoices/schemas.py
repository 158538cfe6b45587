from pydantic import BaseModel, ConfigDict, Field, field_validator
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime

from invoicing.common.money import quantize_money, quantize_rate, ZERO
from invoicing.modules.invoices.models import InvoiceStatus


# Invoice Line Item Schemas
class LineItem(BaseModel):
    """
    Ítem de factura inmutable.

    Solo normaliza tipos (Decimal a 2/4 decimales). Las reglas de negocio
    (nombre, precio >= 0, cantidad >= 1, tasa en [0, 1]) las aplica el
    calculador al crear la factura.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    price: Decimal
    quantity: int = 1
    tax_rate: Decimal = Decimal('0.0000')
    description: Optional[str] = None
    sku: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None

    @field_validator('price', mode='before')
    @classmethod
    def normalize_price(cls, v):
        return quantize_money(v)

    @field_validator('tax_rate', mode='before')
    @classmethod
    def normalize_tax_rate(cls, v):
        return quantize_rate(v)

    @property
    def display_description(self) -> str:
        return self.description or self.name

    @property
    def subtotal(self) -> Decimal:
        return quantize_money(self.price * self.quantity)

    @property
    def tax_amount(self) -> Decimal:
        return quantize_money(self.subtotal * self.tax_rate)

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax_amount


class InvoiceTotals(BaseModel):
    """Totales calculados de la factura"""
    subtotal: Decimal = ZERO
    item_tax: Decimal = ZERO
    tax: Decimal = ZERO        # ajuste explícito + impuestos de los ítems
    discount: Decimal = ZERO
    total: Decimal = ZERO


# Payment Schemas
class PaymentCreate(BaseModel):
    """Datos de un pago; el monto se valida contra el saldo en el ledger"""
    amount: Decimal
    payment_method: str = Field(..., min_length=1, max_length=50)
    reference_number: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('amount', mode='before')
    @classmethod
    def normalize_amount(cls, v):
        return quantize_money(v)


# Output Schemas
class InvoiceItemOut(BaseModel):
    name: str
    description: Optional[str]
    price: Decimal
    quantity: int
    tax_rate: Decimal
    subtotal: Decimal
    item_tax: Decimal
    total: Decimal
    sku: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentOut(BaseModel):
    id: UUID
    amount: Decimal
    payment_method: str
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    paid_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceOut(BaseModel):
    id: UUID
    invoice_number: str
    payer_type: str
    payer_id: str
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    invoiceable_type: str
    invoiceable_id: str
    description: Optional[str] = None
    subtotal_amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    status: InvoiceStatus
    status_label: str
    formatted_total: str
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_dict")
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None
    recurring_interval: int = 1
    recurring_end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    parent_invoice_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceDetail(InvoiceOut):
    """Factura con ítems, pagos y saldo"""
    items: List[InvoiceItemOut] = []
    payments: List[PaymentOut] = []
    paid_amount: Decimal = ZERO
    remaining_amount: Decimal = ZERO


# Stats Schemas
class InvoiceStats(BaseModel):
    """Resumen global por estado"""
    total: int
    pending: int
    paid: int
    overdue: int
    failed: int
    total_revenue: Decimal
    pending_revenue: Decimal


class PartyStats(BaseModel):
    """Resumen de facturas de un pagador o de un invoiceable"""
    total_invoices: int
    paid_invoices: int
    pending_invoices: int
    overdue_invoices: int
    total_paid: Decimal
    total_pending: Decimal
    total_overdue: Decimal
