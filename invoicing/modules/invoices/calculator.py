"""
Cálculo de montos de factura

Funciones puras: reciben ítems y ajustes explícitos y devuelven los totales
conciliados. Toda la aritmética es Decimal con redondeo comercial.
"""

from decimal import Decimal
from typing import Any, Iterable, List

from invoicing.common.money import quantize_money, ZERO
from invoicing.modules.invoices.exceptions import (
    ItemValidationError, DiscountExceedsSubtotal, NegativeTotal, NegativeAdjustment
)
from invoicing.modules.invoices.schemas import LineItem, InvoiceTotals


def validate_item(item: LineItem) -> None:
    """Validar un ítem antes de agregarlo a los totales"""
    name = (item.name or "").strip()
    if not name:
        raise ItemValidationError(item.name or "", "el nombre es obligatorio")

    if item.price < 0:
        raise ItemValidationError(item.name, f"precio negativo: {item.price}")

    if item.quantity < 1:
        raise ItemValidationError(item.name, f"la cantidad debe ser al menos 1 (recibido {item.quantity})")

    if item.tax_rate < 0 or item.tax_rate > 1:
        raise ItemValidationError(
            item.name, f"tasa de impuesto inválida: {item.tax_rate} (debe estar entre 0 y 1)"
        )


def validate_adjustment(kind: str, amount: Any) -> Decimal:
    value = quantize_money(amount)
    if value < 0:
        raise NegativeAdjustment(kind, value)
    return value


def calculate_totals(items: Iterable[LineItem], tax: Any = ZERO, discount: Any = ZERO) -> InvoiceTotals:
    """
    Calcular subtotal, impuestos, descuento y total

    Args:
        items: Ítems de la factura (en orden)
        tax: Ajuste explícito de impuestos (>= 0), se suma a los impuestos por ítem
        discount: Descuento explícito (>= 0), no puede superar el subtotal

    Returns:
        InvoiceTotals con total = subtotal + tax - discount
    """
    items: List[LineItem] = list(items)
    for item in items:
        validate_item(item)

    tax_adjustment = validate_adjustment("impuesto", tax)
    discount_amount = validate_adjustment("descuento", discount)

    subtotal = sum((item.subtotal for item in items), ZERO)
    # Impuesto redondeado por ítem, luego sumado
    item_tax = sum((item.tax_amount for item in items), ZERO)
    total_tax = tax_adjustment + item_tax

    if discount_amount > subtotal:
        raise DiscountExceedsSubtotal(discount_amount, subtotal)

    total = subtotal + total_tax - discount_amount
    if total < 0:
        raise NegativeTotal(subtotal, total_tax, discount_amount)

    return InvoiceTotals(
        subtotal=subtotal,
        item_tax=item_tax,
        tax=total_tax,
        discount=discount_amount,
        total=total
    )
