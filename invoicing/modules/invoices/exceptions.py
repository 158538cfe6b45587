"""
Errores de dominio del módulo de facturación

Todos heredan de InvoiceException. Son fallas de validación o de
precondición de estado; nunca envuelven excepciones del framework.
"""

from decimal import Decimal
from typing import Any


def _fmt(amount: Any) -> str:
    return f"{Decimal(str(amount)):,.2f}"


class InvoiceException(Exception):
    """Error base de facturación"""


# ===== CONSTRUCCIÓN =====

class MissingPayer(InvoiceException):
    def __init__(self):
        super().__init__("Se requiere un pagador para crear la factura")


class MissingInvoiceable(InvoiceException):
    def __init__(self):
        super().__init__("Se requiere un invoiceable para crear la factura")


class NoItems(InvoiceException):
    def __init__(self):
        super().__init__("La factura debe incluir al menos un ítem")


class InvalidParticipant(InvoiceException):
    """El objeto no cumple el contrato Payer/Invoiceable"""

    def __init__(self, role: str, obj: Any):
        self.role = role
        self.obj = obj
        super().__init__(f"{type(obj).__name__} no implementa el contrato {role}")


class ItemValidationError(InvoiceException):
    def __init__(self, item: str, reason: str):
        self.item = item
        self.reason = reason
        super().__init__(f"Ítem '{item}': {reason}")


class NegativeAdjustment(InvoiceException):
    def __init__(self, kind: str, amount: Any):
        self.kind = kind
        self.amount = amount
        super().__init__(f"El ajuste de {kind} no puede ser negativo: {amount}")


class DiscountExceedsSubtotal(InvoiceException):
    def __init__(self, discount: Decimal, subtotal: Decimal):
        self.discount = discount
        self.subtotal = subtotal
        super().__init__(
            f"El descuento ({_fmt(discount)}) no puede exceder el subtotal ({_fmt(subtotal)})"
        )


class NegativeTotal(InvoiceException):
    def __init__(self, subtotal: Decimal, tax: Decimal, discount: Decimal):
        self.subtotal = subtotal
        self.tax = tax
        self.discount = discount
        super().__init__(
            f"El total no puede ser negativo. Subtotal: {subtotal}, Impuestos: {tax}, Descuento: {discount}"
        )


class AmountMismatch(InvoiceException):
    def __init__(self, expected: Decimal, calculated: Decimal):
        self.expected = expected
        self.calculated = calculated
        super().__init__(
            f"El total no coincide. Esperado: {_fmt(expected)}, Calculado: {_fmt(calculated)}. "
            "Use without_strict_validation() si es intencional."
        )


class InvoiceNumberCollision(InvoiceException):
    def __init__(self, scope: str, attempts: int):
        self.scope = scope
        self.attempts = attempts
        super().__init__(
            f"No fue posible asignar un número único para '{scope}' tras {attempts} intentos"
        )


# ===== ESTADOS =====

class AlreadyPaid(InvoiceException):
    def __init__(self, invoice_number: str = None):
        self.invoice_number = invoice_number
        super().__init__("La factura ya está pagada")


class CannotCancelPaid(InvoiceException):
    def __init__(self, invoice_number: str = None):
        self.invoice_number = invoice_number
        super().__init__("No se puede cancelar una factura pagada")


class CannotRefundUnpaid(InvoiceException):
    def __init__(self, invoice_number: str = None):
        self.invoice_number = invoice_number
        super().__init__("Solo se pueden reembolsar facturas pagadas")


class InvalidStatusTransition(InvoiceException):
    def __init__(self, current: Any, target: Any):
        self.current = current
        self.target = target
        super().__init__(
            f"Transición de estado inválida: {getattr(current, 'value', current)} -> "
            f"{getattr(target, 'value', target)}"
        )


# ===== PAGOS =====

class InvalidPaymentAmount(InvoiceException):
    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(f"El monto del pago debe ser mayor a 0: {amount}")


class PaymentExceedsRemaining(InvoiceException):
    def __init__(self, attempted: Decimal, remaining: Decimal):
        self.attempted = attempted
        self.remaining = remaining
        super().__init__(
            f"El pago ({_fmt(attempted)}) excede el saldo pendiente ({_fmt(remaining)})"
        )


class InvoiceNotFound(InvoiceException):
    def __init__(self, lookup: Any):
        self.lookup = lookup
        super().__init__(f"Factura no encontrada: {lookup}")
