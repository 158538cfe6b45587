"""
Persistencia de facturas

InvoiceStore define lo que el núcleo necesita del almacenamiento; las
operaciones de negocio (builder, máquina de estados, ledger, recurrencia)
solo dependen de este contrato. SqlAlchemyInvoiceStore es la implementación
sobre una Session de SQLAlchemy.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from invoicing.common.money import quantize_money
from invoicing.modules.invoices.models import (
    Invoice, InvoicePayment, InvoiceActivity, InvoiceStatus
)

# (kind, id) de un pagador o invoiceable
PartyRef = Tuple[str, str]


class NumberConflict(Exception):
    """El número de factura ya fue tomado por otra transacción"""


class InvoiceStore(ABC):
    """Contrato de almacenamiento del núcleo de facturación"""

    @abstractmethod
    def add_invoice(self, invoice: Invoice) -> Invoice:
        """Registrar una factura nueva con sus ítems (sin confirmar).

        Lanza NumberConflict si el número ya existe; cualquier otra violación
        de integridad se propaga tal cual.
        """

    @abstractmethod
    def lock_invoice(self, invoice: Invoice) -> Invoice:
        """Releer la factura bloqueando su fila hasta el fin de la transacción"""

    @abstractmethod
    def add_payment(self, payment: InvoicePayment) -> InvoicePayment:
        """Registrar un pago (sin confirmar)"""

    @abstractmethod
    def add_activity(self, activity: InvoiceActivity) -> InvoiceActivity:
        """Registrar una actividad (sin confirmar)"""

    @abstractmethod
    def commit(self) -> None:
        """Confirmar la unidad de trabajo actual"""

    @abstractmethod
    def rollback(self) -> None:
        """Descartar la unidad de trabajo actual"""

    @abstractmethod
    def get(self, invoice_id: UUID, include_deleted: bool = False) -> Optional[Invoice]:
        """Buscar factura por ID"""

    @abstractmethod
    def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        """Buscar factura por número"""

    @abstractmethod
    def get_last_invoice_number(self, scope: str) -> Optional[str]:
        """Mayor número emitido con el prefijo dado (incluye facturas eliminadas)"""

    @abstractmethod
    def sum_payments(self, invoice_id: UUID) -> Decimal:
        """Suma de los pagos registrados para la factura"""

    @abstractmethod
    def list_payments(self, invoice_id: UUID) -> List[InvoicePayment]:
        """Pagos de la factura en orden de registro"""

    @abstractmethod
    def find_invoices(self, status: InvoiceStatus = None, payer: PartyRef = None,
                      invoiceable: PartyRef = None, overdue_at: datetime = None) -> List[Invoice]:
        """Facturas no eliminadas que cumplen los filtros"""

    @abstractmethod
    def summarize(self, status: InvoiceStatus = None, payer: PartyRef = None,
                  invoiceable: PartyRef = None, overdue_at: datetime = None) -> Tuple[int, Decimal]:
        """(cantidad, suma de total_amount) para los mismos filtros de find_invoices"""

    @abstractmethod
    def find_due_recurring(self, now: datetime) -> List[Invoice]:
        """Facturas recurrentes maduras cuya fecha de fin no ha pasado"""


class SqlAlchemyInvoiceStore(InvoiceStore):
    def __init__(self, db: Session):
        self.db = db

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.db.add(invoice)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            # Solo la UNIQUE del número es un conflicto reintentable
            if "invoice_number" not in str(e.orig):
                raise
            raise NumberConflict(invoice.invoice_number) from e
        return invoice

    def lock_invoice(self, invoice: Invoice) -> Invoice:
        return self.db.query(Invoice).filter(
            Invoice.id == invoice.id
        ).with_for_update().populate_existing().one()

    def add_payment(self, payment: InvoicePayment) -> InvoicePayment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def add_activity(self, activity: InvoiceActivity) -> InvoiceActivity:
        self.db.add(activity)
        self.db.flush()
        return activity

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def get(self, invoice_id: UUID, include_deleted: bool = False) -> Optional[Invoice]:
        query = self.db.query(Invoice).options(
            selectinload(Invoice.items)
        ).filter(Invoice.id == invoice_id)
        if not include_deleted:
            query = query.filter(Invoice.deleted_at.is_(None))
        return query.first()

    def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        return self.db.query(Invoice).options(
            selectinload(Invoice.items)
        ).filter(
            Invoice.invoice_number == invoice_number,
            Invoice.deleted_at.is_(None)
        ).first()

    def get_last_invoice_number(self, scope: str) -> Optional[str]:
        # Ordenar por longitud primero: "...-10000" es mayor que "...-9999"
        row = self.db.query(Invoice.invoice_number).filter(
            Invoice.invoice_number.startswith(f"{scope}-", autoescape=True)
        ).order_by(
            func.length(Invoice.invoice_number).desc(),
            Invoice.invoice_number.desc()
        ).first()
        return row[0] if row else None

    def sum_payments(self, invoice_id: UUID) -> Decimal:
        total = self.db.query(
            func.coalesce(func.sum(InvoicePayment.amount), 0)
        ).filter(InvoicePayment.invoice_id == invoice_id).scalar()
        return quantize_money(total or 0)

    def list_payments(self, invoice_id: UUID) -> List[InvoicePayment]:
        return self.db.query(InvoicePayment).filter(
            InvoicePayment.invoice_id == invoice_id
        ).order_by(InvoicePayment.paid_at, InvoicePayment.created_at).all()

    def _filtered(self, query, status=None, payer=None, invoiceable=None, overdue_at=None):
        query = query.filter(Invoice.deleted_at.is_(None))

        if status is not None:
            query = query.filter(Invoice.status == status)

        if payer is not None:
            kind, payer_id = payer
            query = query.filter(Invoice.payer_type == kind, Invoice.payer_id == str(payer_id))

        if invoiceable is not None:
            kind, invoiceable_id = invoiceable
            query = query.filter(
                Invoice.invoiceable_type == kind,
                Invoice.invoiceable_id == str(invoiceable_id)
            )

        if overdue_at is not None:
            query = query.filter(
                Invoice.status == InvoiceStatus.PENDING,
                Invoice.due_date < overdue_at
            )

        return query

    def find_invoices(self, status: InvoiceStatus = None, payer: PartyRef = None,
                      invoiceable: PartyRef = None, overdue_at: datetime = None) -> List[Invoice]:
        query = self._filtered(
            self.db.query(Invoice), status, payer, invoiceable, overdue_at
        )
        return query.order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc()).all()

    def summarize(self, status: InvoiceStatus = None, payer: PartyRef = None,
                  invoiceable: PartyRef = None, overdue_at: datetime = None) -> Tuple[int, Decimal]:
        query = self._filtered(
            self.db.query(
                func.count(Invoice.id),
                func.coalesce(func.sum(Invoice.total_amount), 0)
            ),
            status, payer, invoiceable, overdue_at
        )
        count, amount = query.one()
        return count or 0, quantize_money(amount or 0)

    def find_due_recurring(self, now: datetime) -> List[Invoice]:
        return self.db.query(Invoice).options(
            selectinload(Invoice.items)
        ).filter(
            Invoice.deleted_at.is_(None),
            Invoice.is_recurring.is_(True),
            Invoice.next_billing_date <= now,
            or_(
                Invoice.recurring_end_date.is_(None),
                Invoice.recurring_end_date >= now
            )
        ).order_by(Invoice.next_billing_date).all()
