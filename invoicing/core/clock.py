"""
Reloj del sistema

Todas las marcas de tiempo se manejan como UTC sin tzinfo, igual que las
columnas DateTime de los modelos, para que las comparaciones (vencimiento,
próxima facturación) funcionen igual en Postgres y en SQLite.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Colaborador que entrega la hora actual"""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Reloj real basado en UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Reloj fijo, útil para pruebas y para reprocesos con fecha de corte"""

    def __init__(self, moment: datetime):
        self.moment = moment

    def now(self) -> datetime:
        return self.moment

    def advance(self, **delta) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment


system_clock = SystemClock()
