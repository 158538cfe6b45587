"""
Helpers de aritmética monetaria

Montos con 2 decimales y tasas con 4, siempre Decimal con redondeo comercial
(ROUND_HALF_UP). Nunca se opera con float.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

MONEY_PLACES = Decimal('0.01')
RATE_PLACES = Decimal('0.0001')
ZERO = Decimal('0.00')


def to_decimal(value: Any) -> Decimal:
    """Convertir a Decimal pasando por str (evita arrastrar la representación binaria de un float)"""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Valor monetario inválido: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Valor monetario inválido: {value!r}")
    # NaN e Infinity no son montos
    if not result.is_finite():
        raise ValueError(f"Valor monetario inválido: {value!r}")
    return result


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def quantize_rate(value: Any) -> Decimal:
    return to_decimal(value).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)
