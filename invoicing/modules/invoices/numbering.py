from datetime import datetime
from typing import Optional

from invoicing.core.config import Settings, settings as default_settings


class InvoiceNumberSequencer:
    """
    Numeración secuencial por ámbito de fecha: INV-20240115-0001

    Solo hace la aritmética y el formato. La consulta del último número
    emitido es responsabilidad del llamador (InvoiceBuilder.create), que la
    ejecuta dentro de una sección crítica por ámbito.
    """

    SEPARATOR = "-"

    def __init__(self, prefix: str = None, date_format: str = None, padding: int = None,
                 settings: Settings = None):
        settings = settings or default_settings
        self.prefix = prefix if prefix is not None else settings.INVOICE_NUMBER_PREFIX
        self.date_format = date_format or settings.INVOICE_NUMBER_DATE_FORMAT
        self.padding = padding or settings.INVOICE_NUMBER_PADDING

    def scope_for(self, moment: datetime) -> str:
        """Prefijo con fecha, ej. INV-20240115"""
        return f"{self.prefix}{moment.strftime(self.date_format)}"

    def parse_sequence(self, number: str) -> int:
        suffix = number.rsplit(self.SEPARATOR, 1)[-1]
        try:
            return int(suffix)
        except ValueError:
            raise ValueError(f"Número de factura sin secuencia numérica: {number}")

    def next_number(self, scope: str, last_number: Optional[str] = None) -> str:
        """
        Siguiente número del ámbito

        Args:
            scope: Prefijo con fecha (ver scope_for)
            last_number: Mayor número existente del ámbito, o None si no hay

        Returns:
            scope + "-" + secuencia con ceros a la izquierda
        """
        sequence = self.parse_sequence(last_number) + 1 if last_number else 1
        # Superado el padding el ancho crece; no se reinicia
        return f"{scope}{self.SEPARATOR}{sequence:0{self.padding}d}"
