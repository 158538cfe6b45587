"""
Locks por llave para secciones críticas del núcleo de facturación:

- "number:<scope>": consulta del último número + asignación del siguiente
- "invoice:<id>": verificación de saldo + registro de pago

Solo serializa dentro del proceso; entre procesos la garantía la dan la
restricción UNIQUE de invoices.invoice_number (ver InvoiceBuilder.create) y
el bloqueo de fila de la factura al registrar un pago (ver PaymentLedger).

Cada llave vive mientras alguien la sostiene o la espera; al soltarla el
último se descarta, de modo que el mapa no crece con cada factura.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._holders: Dict[str, int] = {}

    def _acquire_ref(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1
            return lock

    def _release_ref(self, key: str) -> None:
        with self._guard:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_ref(key)
        try:
            with lock:
                yield
        finally:
            self._release_ref(key)


default_locks = KeyedLocks()
