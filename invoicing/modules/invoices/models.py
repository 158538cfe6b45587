from invoicing.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric, Enum, Text, JSON, Index, Uuid
from sqlalchemy.orm import relationship, reconstructor
from sqlalchemy.sql import func
from decimal import Decimal
from uuid import uuid4
from invoicing.common.mixins import TimestampMixin, SoftDeleteMixin
from invoicing.common.money import quantize_money
from invoicing.core.clock import system_clock
import enum


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"        # Emitida, pendiente de pago
    PAID = "paid"              # Pagada completamente
    CANCELLED = "cancelled"    # Cancelada antes del pago
    FAILED = "failed"          # Cobro fallido
    REFUNDED = "refunded"      # Reembolsada después del pago
    # "overdue" no se almacena: ver Invoice.is_overdue()


class RecurringFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Invoice(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "invoices"

    id = Column(Uuid, primary_key=True, default=uuid4)
    invoice_number = Column(String(50), nullable=False, unique=True)

    # Pagador (referencia polimórfica + datos desnormalizados)
    payer_type = Column(String(100), nullable=False)
    payer_id = Column(String(64), nullable=False)
    payer_name = Column(String(200), nullable=True)
    payer_email = Column(String(200), nullable=True)

    # Objeto facturado (orden, suscripción, recarga, etc.)
    invoiceable_type = Column(String(100), nullable=False)
    invoiceable_id = Column(String(64), nullable=False)

    description = Column(Text, nullable=True)

    # Totals (calculated)
    subtotal_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)

    currency = Column(String(3), nullable=False, default="USD")
    status = Column(
        Enum(InvoiceStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=InvoiceStatus.PENDING
    )

    due_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # "metadata" está reservado por el declarative Base
    metadata_ = Column("metadata", JSON, nullable=True)

    # Recurrencia
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_frequency = Column(String(20), nullable=True)  # Texto libre: frecuencias desconocidas = +1 mes
    recurring_interval = Column(Integer, nullable=False, default=1)
    recurring_end_date = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    parent_invoice_id = Column(Uuid, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)

    # Relationships
    items = relationship(
        "InvoiceItem", back_populates="invoice", cascade="all, delete-orphan",
        order_by="InvoiceItem.position"
    )
    payments = relationship(
        "InvoicePayment", back_populates="invoice", cascade="all, delete-orphan",
        order_by="InvoicePayment.paid_at"
    )
    activities = relationship(
        "InvoiceActivity", back_populates="invoice", cascade="all, delete-orphan",
        order_by="InvoiceActivity.id"
    )
    parent = relationship("Invoice", remote_side=[id], back_populates="children")
    children = relationship("Invoice", back_populates="parent")

    __table_args__ = (
        Index("idx_invoices_payer", "payer_type", "payer_id"),
        Index("idx_invoices_invoiceable", "invoiceable_type", "invoiceable_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_due_date", "due_date"),
        Index("idx_invoices_recurring", "is_recurring", "next_billing_date"),
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._init_transient()

    @reconstructor
    def _init_transient(self):
        # Estado en memoria, nunca persistido: callbacks "on paid" registrados
        # en el builder y el objeto invoiceable vivo (si se conoce).
        self.pending_callbacks = []
        self.invoiceable_target = None

    @property
    def metadata_dict(self) -> dict:
        return dict(self.metadata_ or {})

    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    def is_pending(self) -> bool:
        return self.status == InvoiceStatus.PENDING

    def is_overdue(self, now=None) -> bool:
        """Pendiente y con fecha de vencimiento en el pasado"""
        now = now or system_clock.now()
        return self.is_pending() and self.due_date is not None and self.due_date < now

    @property
    def status_label(self) -> str:
        return self.status.value.capitalize()

    @property
    def formatted_total(self) -> str:
        return f"{self.currency} {quantize_money(self.total_amount):,.2f}"

    def __repr__(self):
        return f"<Invoice {self.invoice_number} {self.status.value if self.status else None}>"


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(15, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    tax_rate = Column(Numeric(7, 4), nullable=False, default=0)
    subtotal = Column(Numeric(15, 2), nullable=False)  # price * quantity
    sku = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    invoice = relationship("Invoice", back_populates="items")

    @property
    def item_tax(self) -> Decimal:
        return quantize_money(Decimal(self.subtotal) * Decimal(self.tax_rate))

    @property
    def total(self) -> Decimal:
        return quantize_money(self.subtotal) + self.item_tax


class InvoicePayment(Base, TimestampMixin):
    __tablename__ = "invoice_payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    invoice_id = Column(Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)  # Siempre > 0, se valida en el ledger
    payment_method = Column(String(50), nullable=False)
    reference_number = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    paid_at = Column(DateTime, nullable=False)

    invoice = relationship("Invoice", back_populates="payments")


class InvoiceActivity(Base):
    """Bitácora de cambios de estado / montos de una factura"""
    __tablename__ = "invoice_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    action = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    invoice = relationship("Invoice", back_populates="activities")
