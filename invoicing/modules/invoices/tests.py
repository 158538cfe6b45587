"""
Tests para el módulo de Facturación

Tests que cubren:
- Cálculo de montos y validaciones de ítems
- Numeración secuencial y reintentos por colisión
- Builder: orden de validación, modo estricto, metadata, callbacks
- Máquina de estados: transiciones válidas e inválidas, bitácora
- Pagos parciales, totales y sobrepagos
- Facturación recurrente (individual y por lote)
- Consultas, estadísticas y eliminación lógica
- Locks por llave y concurrencia entre sesiones

Los tests corren sobre SQLite en memoria con un reloj fijo; los de
concurrencia usan un archivo SQLite para que cada sesión tenga su conexión.
"""

import threading

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal

from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from invoicing.common.money import quantize_money
from invoicing.core.clock import FrozenClock
from invoicing.core.config import Settings
from invoicing.core.locks import KeyedLocks
from invoicing.database.database import SessionLocal, init_db
from invoicing.modules.invoices.builder import InvoiceBuilder
from invoicing.modules.invoices.calculator import calculate_totals
from invoicing.modules.invoices.exceptions import (
    AlreadyPaid, AmountMismatch, CannotCancelPaid, CannotRefundUnpaid, DiscountExceedsSubtotal,
    InvalidParticipant, InvalidPaymentAmount, InvalidStatusTransition, InvoiceNotFound,
    InvoiceNumberCollision, ItemValidationError, MissingInvoiceable, MissingPayer,
    NegativeAdjustment, NoItems, PaymentExceedsRemaining
)
from invoicing.modules.invoices.models import Invoice, InvoiceActivity, InvoiceStatus
from invoicing.modules.invoices.numbering import InvoiceNumberSequencer
from invoicing.modules.invoices.recurring import RecurringScheduler, advance_billing_date
from invoicing.modules.invoices.schemas import LineItem, PaymentCreate
from invoicing.modules.invoices.service import InvoiceService


T0 = datetime(2024, 1, 15, 10, 30)


class FakeUser:
    """Pagador de prueba"""
    payer_kind = "user"

    def __init__(self, id=1, name="Ana Gómez", email="ana@example.com", metadata=None):
        self.id = id
        self.name = name
        self.email = email
        self.metadata = metadata or {}

    def get_payer_name(self):
        return self.name

    def get_payer_email(self):
        return self.email

    def get_payer_address(self):
        return "Calle 10 # 5-20"

    def get_payer_metadata(self):
        return self.metadata


class FakeTopUp:
    """Invoiceable de prueba que registra las facturas pagadas"""
    invoiceable_kind = "topup"

    def __init__(self, id=10, amount=0, description="Recarga de saldo", metadata=None):
        self.id = id
        self.amount = amount
        self.description = description
        self.metadata = metadata or {}
        self.paid_invoices = []

    def get_invoiceable_description(self):
        return self.description

    def get_invoiceable_amount(self):
        return self.amount

    def get_invoiceable_metadata(self):
        return self.metadata

    def on_invoice_paid(self, invoice):
        self.paid_invoices.append(invoice.invoice_number)


class StuckSequencer(InvoiceNumberSequencer):
    """Devuelve primero números ya tomados para forzar colisiones"""

    def __init__(self, taken, **kwargs):
        super().__init__(**kwargs)
        self.taken = list(taken)

    def next_number(self, scope, last_number=None):
        if self.taken:
            return self.taken.pop(0)
        return super().next_number(scope, last_number)


class BrokenObserver:
    def record(self, invoice, action, description, old_values=None, new_values=None):
        raise RuntimeError("bitácora no disponible")


# ===== FIXTURES =====

@pytest.fixture
def engine():
    """Base de datos SQLite en memoria compartida por las sesiones del test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """Base de datos SQLite en archivo: cada sesión abre su propia conexión"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'invoices.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = SessionLocal(bind=engine)
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def test_settings():
    return Settings(DATABASE_URL="sqlite://")


@pytest.fixture
def service(db_session, test_settings, clock):
    return InvoiceService(db_session, settings=test_settings, clock=clock, locks=KeyedLocks())


@pytest.fixture
def user():
    return FakeUser()


@pytest.fixture
def topup():
    return FakeTopUp(amount=100000)


@pytest.fixture
def pending_invoice(service, user, topup):
    """Factura pendiente por 100,000"""
    return service.builder(user, topup).item("Recarga", 100000).create()


def make_builder(service, settings=None, **kwargs):
    return InvoiceBuilder(
        service.store,
        settings=settings or service.settings,
        clock=service.clock,
        locks=service.locks,
        **kwargs
    )


# ===== TESTS DE CÁLCULO =====

class TestAmountCalculator:
    """Tests para el cálculo de totales"""

    def test_totals_with_tax_and_discount(self):
        """Test ejemplo: 2x50,000 + 75,000, impuesto 15,000, descuento 10,000"""
        totals = calculate_totals(
            [
                LineItem(name="Plan básico", price=50000, quantity=2),
                LineItem(name="Soporte", price=75000, quantity=1),
            ],
            tax=15000,
            discount=10000
        )
        assert totals.subtotal == Decimal("175000.00")
        assert totals.tax == Decimal("15000.00")
        assert totals.discount == Decimal("10000.00")
        assert totals.total == Decimal("180000.00")

    def test_item_tax_rate_added_to_tax(self):
        """Test impuesto por ítem redondeado a 2 decimales"""
        totals = calculate_totals([LineItem(name="Servicio", price="10.05", tax_rate="0.19")], tax=1)
        assert totals.item_tax == Decimal("1.91")
        assert totals.tax == Decimal("2.91")
        assert totals.total == Decimal("12.96")

    def test_float_inputs_are_exact(self):
        """Test 0.1 x 3 no arrastra error binario"""
        totals = calculate_totals([LineItem(name="Mini", price=0.1, quantity=3)])
        assert totals.subtotal == Decimal("0.30")

    def test_discount_exceeds_subtotal(self):
        with pytest.raises(DiscountExceedsSubtotal) as exc:
            calculate_totals([LineItem(name="A", price=100)], discount=150)
        assert exc.value.discount == Decimal("150.00")
        assert exc.value.subtotal == Decimal("100.00")

    def test_discount_equal_to_subtotal_gives_zero_total(self):
        totals = calculate_totals([LineItem(name="A", price=100)], discount=100)
        assert totals.total == Decimal("0.00")

    @pytest.mark.parametrize("item, fragment", [
        (LineItem(name="", price=10), "nombre"),
        (LineItem(name="Negativo", price=-1), "precio"),
        (LineItem(name="Cero", price=10, quantity=0), "cantidad"),
        (LineItem(name="Tasa", price=10, tax_rate="1.5"), "tasa"),
    ])
    def test_invalid_items(self, item, fragment):
        """Test cada regla de ítem nombra el ítem inválido"""
        with pytest.raises(ItemValidationError) as exc:
            calculate_totals([item])
        assert fragment in str(exc.value)
        assert exc.value.item == item.name

    def test_item_errors_before_discount_errors(self):
        with pytest.raises(ItemValidationError):
            calculate_totals([LineItem(name="Malo", price=-5)], discount=1000)

    def test_negative_adjustments(self):
        with pytest.raises(NegativeAdjustment):
            calculate_totals([LineItem(name="A", price=10)], tax=-1)

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity", Decimal("NaN"), Decimal("Infinity"), float("inf")])
    def test_non_finite_amounts_rejected(self, value):
        """Test NaN e Infinity no son montos válidos"""
        with pytest.raises(ValueError):
            quantize_money(value)

    def test_non_finite_item_price_rejected(self):
        with pytest.raises(ValidationError):
            LineItem(name="A", price="Infinity")

    def test_non_finite_tax_rejected(self):
        with pytest.raises(ValueError):
            calculate_totals([LineItem(name="A", price=10)], tax="NaN")


# ===== TESTS DE NUMERACIÓN =====

class TestInvoiceNumbering:
    """Tests para la numeración INV-YYYYMMDD-NNNN"""

    def test_first_number_of_scope(self):
        sequencer = InvoiceNumberSequencer(prefix="INV-", date_format="%Y%m%d", padding=4)
        scope = sequencer.scope_for(T0)
        assert scope == "INV-20240115"
        assert sequencer.next_number(scope) == "INV-20240115-0001"

    def test_increments_last_number(self):
        sequencer = InvoiceNumberSequencer(prefix="INV-", date_format="%Y%m%d", padding=4)
        assert sequencer.next_number("INV-20240115", "INV-20240115-0041") == "INV-20240115-0042"

    def test_width_grows_past_padding(self):
        sequencer = InvoiceNumberSequencer(prefix="INV-", date_format="%Y%m%d", padding=4)
        assert sequencer.next_number("INV-20240115", "INV-20240115-9999") == "INV-20240115-10000"

    def test_non_numeric_suffix(self):
        sequencer = InvoiceNumberSequencer(prefix="INV-", date_format="%Y%m%d", padding=4)
        with pytest.raises(ValueError):
            sequencer.next_number("INV-20240115", "INV-20240115-ABC")

    def test_sequential_numbers_per_day(self, service, user, topup, clock):
        first = service.builder(user, topup).item("Recarga", 100000).create()
        second = service.builder(user, topup).item("Recarga", 100000).create()
        clock.advance(days=1)
        next_day = service.builder(user, topup).item("Recarga", 100000).create()

        assert first.invoice_number == "INV-20240115-0001"
        assert second.invoice_number == "INV-20240115-0002"
        assert next_day.invoice_number == "INV-20240116-0001"

    def test_custom_prefix_from_settings(self, db_session, clock, user, topup):
        service = InvoiceService(
            db_session, settings=Settings(INVOICE_NUMBER_PREFIX="FAC-"), clock=clock, locks=KeyedLocks()
        )
        invoice = service.builder(user, topup).item("Recarga", 100000).create()
        assert invoice.invoice_number == "FAC-20240115-0001"

    def test_last_number_orders_by_length(self, service, db_session):
        """Test ...-10000 es mayor que ...-9999"""
        for number in ("INV-20240115-9999", "INV-20240115-10000"):
            db_session.add(Invoice(
                invoice_number=number, payer_type="user", payer_id="1",
                invoiceable_type="topup", invoiceable_id="1"
            ))
        db_session.commit()
        assert service.store.get_last_invoice_number("INV-20240115") == "INV-20240115-10000"

    def test_retries_on_number_collision(self, service, user, topup, pending_invoice):
        builder = make_builder(
            service,
            sequencer=StuckSequencer([pending_invoice.invoice_number], settings=service.settings)
        )
        invoice = builder.from_payer(user).pay(topup).item("Recarga", 100000).create()
        assert invoice.invoice_number == "INV-20240115-0002"
        assert len(service.pending()) == 2

    def test_collision_retries_exhausted(self, service, user, topup, pending_invoice):
        builder = make_builder(
            service,
            sequencer=StuckSequencer([pending_invoice.invoice_number] * 5, settings=service.settings)
        )
        with pytest.raises(InvoiceNumberCollision) as exc:
            builder.from_payer(user).pay(topup).item("Recarga", 100000).create()
        assert exc.value.attempts == 5
        assert len(service.pending()) == 1

    def test_other_integrity_errors_not_retried(self, service, topup, caplog):
        """Test una violación distinta a la del número se propaga sin reintentos"""
        anonymous = FakeUser()
        anonymous.payer_kind = None

        with pytest.raises(IntegrityError):
            service.builder(anonymous, topup).item("Recarga", 100000).create()

        assert "already taken" not in caplog.text
        assert service.pending() == []


# ===== TESTS DEL BUILDER =====

class TestInvoiceBuilder:
    """Tests para la construcción de facturas"""

    def test_create_invoice_example(self, service, user):
        """Test ejemplo completo con impuesto y descuento"""
        invoice = (
            service.builder(user, FakeTopUp(amount=180000))
            .item("Plan básico", 50000, quantity=2)
            .item("Soporte", 75000)
            .tax(15000)
            .discount(10000)
            .description("Suscripción enero")
            .create()
        )
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.subtotal_amount == Decimal("175000.00")
        assert invoice.tax_amount == Decimal("15000.00")
        assert invoice.discount_amount == Decimal("10000.00")
        assert invoice.total_amount == Decimal("180000.00")
        assert invoice.currency == "USD"
        assert invoice.payer_type == "user"
        assert invoice.payer_id == "1"
        assert invoice.payer_name == "Ana Gómez"
        assert invoice.invoiceable_type == "topup"
        assert [item.name for item in invoice.items] == ["Plan básico", "Soporte"]
        assert invoice.items[0].subtotal == Decimal("100000.00")
        assert invoice.formatted_total == "USD 180,000.00"
        assert invoice.status_label == "Pending"

    def test_default_due_date(self, pending_invoice):
        assert pending_invoice.due_date == T0 + timedelta(days=30)
        assert pending_invoice.paid_at is None

    def test_due_accepts_date_and_string(self, service, user, topup):
        invoice = service.builder(user, topup).item("Recarga", 100000).due(date(2024, 2, 1)).create()
        assert invoice.due_date == datetime(2024, 2, 1)

        invoice = service.builder(user, topup).item("Recarga", 100000).due("2024-03-01T12:00:00").create()
        assert invoice.due_date == datetime(2024, 3, 1, 12, 0)

    def test_missing_payer_checked_first(self, service):
        with pytest.raises(MissingPayer):
            make_builder(service).create()

    def test_missing_invoiceable(self, service, user):
        with pytest.raises(MissingInvoiceable):
            make_builder(service).from_payer(user).item("X", 10).create()

    def test_no_items(self, service, user, topup):
        with pytest.raises(NoItems):
            service.builder(user, topup).create()

    def test_invalid_participant(self, service):
        with pytest.raises(InvalidParticipant):
            make_builder(service).from_payer(object())
        with pytest.raises(InvalidParticipant):
            make_builder(service).pay("orden-1")

    def test_negative_tax_rejected_on_call(self, service, user, topup):
        with pytest.raises(NegativeAdjustment):
            service.builder(user, topup).tax(-10)

    def test_item_error_names_item(self, service, user):
        with pytest.raises(ItemValidationError) as exc:
            service.builder(user, FakeTopUp()).item("Plan roto", -100).create()
        assert "Plan roto" in str(exc.value)

    def test_strict_mode_amount_mismatch(self, service, user):
        with pytest.raises(AmountMismatch) as exc:
            service.builder(user, FakeTopUp(amount=100000)).item("Recarga", 90000).create()
        assert exc.value.expected == Decimal("100000.00")
        assert exc.value.calculated == Decimal("90000.00")
        assert service.pending() == []

    def test_strict_mode_tolerance(self, service, user):
        invoice = service.builder(user, FakeTopUp(amount="100.00")).item("Recarga", "100.01").create()
        assert invoice.total_amount == Decimal("100.01")

    def test_without_strict_validation(self, service, user):
        invoice = (
            service.builder(user, FakeTopUp(amount=100000))
            .item("Recarga", 90000)
            .without_strict_validation()
            .create()
        )
        assert invoice.total_amount == Decimal("90000.00")

    def test_strict_disabled_by_settings(self, db_session, clock, user):
        service = InvoiceService(
            db_session, settings=Settings(INVOICE_STRICT_VALIDATION="false"), clock=clock, locks=KeyedLocks()
        )
        invoice = service.builder(user, FakeTopUp(amount=5)).item("Recarga", 10).create()
        assert invoice.total_amount == Decimal("10.00")

    def test_invoiceable_without_amount_skips_strict(self, service, user):
        invoice = service.builder(user, FakeTopUp(amount=0)).item("Libre", 123).create()
        assert invoice.total_amount == Decimal("123.00")

    def test_with_invoiceable_item(self, service, user):
        topup = FakeTopUp(amount=50000, description="Recarga de saldo")
        invoice = service.builder(user, topup).with_invoiceable_item().create()
        assert [(item.name, item.price) for item in invoice.items] == [("Recarga de saldo", Decimal("50000.00"))]
        assert invoice.total_amount == Decimal("50000.00")

    def test_items_from_mappings(self, service, user):
        invoice = (
            service.builder(user, FakeTopUp())
            .items([
                {"name": "Hora de consultoría", "price": 80, "quantity": 3, "sku": "CONS-1"},
                LineItem(name="Viáticos", price=20),
            ])
            .create()
        )
        assert invoice.subtotal_amount == Decimal("260.00")
        assert invoice.items[0].sku == "CONS-1"
        assert invoice.items[1].description == "Viáticos"

    def test_items_reject_unknown_fields(self, service, user):
        with pytest.raises(ValidationError):
            service.builder(user, FakeTopUp()).items([{"name": "A", "price": 10, "qty": 2}])

    def test_items_reject_unsupported_types(self, service, user):
        with pytest.raises(TypeError):
            service.builder(user, FakeTopUp()).items([("A", 10)])

    def test_metadata_precedence(self, service):
        """Test builder < pagador < invoiceable"""
        payer = FakeUser(metadata={"source": "payer", "plan": "gold"})
        topup = FakeTopUp(metadata={"source": "invoiceable"})
        invoice = (
            service.builder(payer, topup)
            .item("Recarga", 10)
            .meta({"source": "builder", "channel": "web"})
            .create()
        )
        assert invoice.metadata_dict == {"source": "invoiceable", "plan": "gold", "channel": "web"}

    def test_currency_and_status(self, service, user, clock):
        invoice = (
            service.builder(user, FakeTopUp())
            .item("Recarga", 1000)
            .currency("cop")
            .status("paid")
            .create()
        )
        assert invoice.currency == "COP"
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at == clock.now()
        assert invoice.formatted_total == "COP 1,000.00"

    def test_after_create_callbacks(self, service, user, topup):
        created = []

        def failing(invoice):
            raise RuntimeError("webhook caído")

        invoice = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .after(failing)
            .after(lambda inv: created.append(inv.invoice_number))
            .create()
        )
        assert created == [invoice.invoice_number]

    def test_recurring_sets_next_billing_date(self, service, user, topup):
        invoice = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .make_recurring("monthly", interval=2)
            .create()
        )
        assert invoice.is_recurring is True
        assert invoice.recurring_frequency == "monthly"
        assert invoice.next_billing_date == datetime(2024, 3, 15, 10, 30)

    def test_recurring_interval_must_be_positive(self, service, user, topup):
        with pytest.raises(ValueError):
            service.builder(user, topup).make_recurring("weekly", interval=0)

    def test_create_invoice_helper(self, service, user, topup):
        invoice = service.create_invoice(user, topup, 100000, currency="EUR", metadata={"order": 7})
        assert invoice.items[0].name == "Recarga de saldo"
        assert invoice.currency == "EUR"
        assert invoice.metadata_dict == {"order": 7}


# ===== TESTS DE ESTADOS =====

class TestInvoiceStateMachine:
    """Tests para las transiciones de estado"""

    def test_mark_as_paid(self, service, pending_invoice, clock):
        service.mark_as_paid(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.PAID
        assert pending_invoice.paid_at == clock.now()

    def test_mark_as_paid_twice(self, service, pending_invoice):
        service.mark_as_paid(pending_invoice)
        with pytest.raises(AlreadyPaid):
            service.mark_as_paid(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.PAID

    def test_pay_cancelled_invoice(self, service, pending_invoice):
        service.cancel(pending_invoice)
        with pytest.raises(InvalidStatusTransition):
            service.mark_as_paid(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.CANCELLED

    def test_cancel_paid_invoice(self, service, pending_invoice):
        service.mark_as_paid(pending_invoice)
        with pytest.raises(CannotCancelPaid):
            service.cancel(pending_invoice)

    def test_cancel_refunded_invoice(self, service, pending_invoice):
        service.mark_as_paid(pending_invoice)
        service.refund(pending_invoice)
        service.cancel(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.CANCELLED

    def test_cancel_failed_invoice(self, service, pending_invoice):
        """Test una factura con cobro fallido se puede cancelar"""
        service.mark_as_failed(pending_invoice)
        service.cancel(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.CANCELLED

    def test_cancel_cancelled_invoice(self, service, pending_invoice):
        service.cancel(pending_invoice)
        service.cancel(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.CANCELLED

    def test_refund_unpaid_invoice(self, service, pending_invoice):
        with pytest.raises(CannotRefundUnpaid):
            service.refund(pending_invoice)

    def test_mark_as_failed_is_unconditional(self, service, pending_invoice):
        service.mark_as_paid(pending_invoice)
        service.mark_as_failed(pending_invoice)
        assert pending_invoice.status == InvoiceStatus.FAILED

    def test_on_paid_callbacks_fire_once_in_order(self, service, user):
        calls = []
        topup = FakeTopUp(amount=100000)

        def failing(invoice):
            raise RuntimeError("error en callback")

        invoice = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .on_paid(lambda inv: calls.append("first"))
            .when_paid(failing)
            .on_paid(lambda inv: calls.append("third"))
            .create()
        )
        service.mark_as_paid(invoice)

        assert calls == ["first", "third"]
        assert topup.paid_invoices == [invoice.invoice_number]
        assert invoice.pending_callbacks == []

    def test_callbacks_disabled_by_settings(self, db_session, clock, user):
        service = InvoiceService(
            db_session, settings=Settings(INVOICE_CALLBACKS_ENABLED=False), clock=clock, locks=KeyedLocks()
        )
        calls = []
        topup = FakeTopUp(amount=100000)
        invoice = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .on_paid(lambda inv: calls.append(inv))
            .create()
        )
        service.mark_as_paid(invoice)

        assert calls == []
        assert topup.paid_invoices == [invoice.invoice_number]

    def test_invoiceable_resolved_from_registry(self, service, db_session, pending_invoice):
        """Test factura recargada desde la base de datos: el hook se resuelve por (kind, id)"""
        topup = FakeTopUp(id=10, amount=100000)
        service.registry.register("topup", lambda invoiceable_id: topup if invoiceable_id == "10" else None)
        invoice_id = pending_invoice.id
        db_session.expunge_all()

        invoice = service.mark_as_paid(invoice_id)

        assert invoice is not pending_invoice
        assert invoice.pending_callbacks == []
        assert topup.paid_invoices == [invoice.invoice_number]

    def test_activity_log(self, service, db_session, pending_invoice):
        service.mark_as_paid(pending_invoice)

        activities = db_session.query(InvoiceActivity).filter(
            InvoiceActivity.invoice_id == pending_invoice.id
        ).order_by(InvoiceActivity.id).all()

        assert [a.action for a in activities] == ["created", "status_changed"]
        assert activities[1].old_values == {"status": "pending", "total_amount": "100000.00"}
        assert activities[1].new_values["status"] == "paid"

    def test_activity_log_disabled(self, db_session, clock, user, topup):
        service = InvoiceService(
            db_session, settings=Settings(INVOICE_ACTIVITY_LOG_ENABLED=False), clock=clock, locks=KeyedLocks()
        )
        invoice = service.builder(user, topup).item("Recarga", 100000).create()
        service.cancel(invoice)
        assert db_session.query(InvoiceActivity).count() == 0

    def test_observer_failure_does_not_escalate(self, db_session, clock, user, topup):
        service = InvoiceService(
            db_session, clock=clock, locks=KeyedLocks(), observer=BrokenObserver()
        )
        invoice = service.builder(user, topup).item("Recarga", 100000).create()
        service.mark_as_paid(invoice)
        assert invoice.status == InvoiceStatus.PAID

    def test_overdue_is_derived(self, pending_invoice):
        assert pending_invoice.is_overdue(T0) is False
        assert pending_invoice.is_overdue(T0 + timedelta(days=31)) is True


# ===== TESTS DE PAGOS =====

class TestPaymentLedger:
    """Tests para pagos parciales y liquidación"""

    def test_full_payment_marks_paid(self, service, pending_invoice, topup, clock):
        payment = service.add_payment(pending_invoice, 100000, "transferencia", reference="TRX-1")

        assert payment.amount == Decimal("100000.00")
        assert pending_invoice.status == InvoiceStatus.PAID
        assert pending_invoice.paid_at == clock.now()
        assert service.get_remaining_amount(pending_invoice) == Decimal("0.00")
        assert service.is_fully_paid(pending_invoice) is True
        assert topup.paid_invoices == [pending_invoice.invoice_number]

    def test_partial_payments(self, service, pending_invoice):
        service.add_payment(pending_invoice, 40000, "efectivo")
        assert pending_invoice.status == InvoiceStatus.PENDING
        assert service.get_paid_amount(pending_invoice) == Decimal("40000.00")
        assert service.get_remaining_amount(pending_invoice) == Decimal("60000.00")

        service.add_payment(pending_invoice, "60000.00", "tarjeta")
        assert pending_invoice.status == InvoiceStatus.PAID
        assert len(service.store.list_payments(pending_invoice.id)) == 2

    def test_overpayment_rejected(self, service, pending_invoice):
        with pytest.raises(PaymentExceedsRemaining) as exc:
            service.add_payment(pending_invoice, 150000, "transferencia")

        assert exc.value.attempted == Decimal("150000.00")
        assert exc.value.remaining == Decimal("100000.00")
        assert service.store.list_payments(pending_invoice.id) == []
        assert pending_invoice.status == InvoiceStatus.PENDING

    @pytest.mark.parametrize("amount", [0, -10, "0.001"])
    def test_invalid_amount(self, service, pending_invoice, amount):
        with pytest.raises(InvalidPaymentAmount):
            service.add_payment(pending_invoice, amount, "efectivo")

    def test_payment_on_paid_invoice(self, service, pending_invoice):
        service.add_payment(pending_invoice, 100000, "efectivo")
        with pytest.raises(AlreadyPaid):
            service.add_payment(pending_invoice, 1, "efectivo")

    def test_payment_on_cancelled_invoice(self, service, pending_invoice):
        service.cancel(pending_invoice)
        with pytest.raises(InvalidStatusTransition):
            service.add_payment(pending_invoice, 100, "efectivo")

    def test_record_payment_schema(self, service, pending_invoice):
        payment = service.record_payment(pending_invoice.id, PaymentCreate(
            amount="25000.50", payment_method="nequi", reference_number="N-77", metadata={"cuotas": 1}
        ))
        assert payment.amount == Decimal("25000.50")
        assert payment.reference_number == "N-77"
        assert payment.metadata_ == {"cuotas": 1}


# ===== TESTS DE RECURRENCIA =====

class TestRecurringInvoices:
    """Tests para la facturación recurrente"""

    @pytest.mark.parametrize("frequency, interval, expected", [
        ("daily", 1, datetime(2024, 1, 16, 10, 30)),
        ("weekly", 2, datetime(2024, 1, 29, 10, 30)),
        ("monthly", 1, datetime(2024, 2, 15, 10, 30)),
        ("yearly", 1, datetime(2025, 1, 15, 10, 30)),
        ("fortnightly", 3, datetime(2024, 2, 15, 10, 30)),
    ])
    def test_advance_billing_date(self, frequency, interval, expected):
        assert advance_billing_date(T0, frequency, interval) == expected

    def test_month_end_is_clamped(self):
        assert advance_billing_date(datetime(2024, 1, 31), "monthly") == datetime(2024, 2, 29)

    def test_generate_next_invoice(self, service, user, topup, clock):
        """Test mensual: la hija copia ítems y la origen avanza un mes"""
        parent = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .make_recurring("monthly")
            .meta({"plan": "mensual"})
            .create()
        )
        due_at = parent.next_billing_date
        assert due_at == datetime(2024, 2, 15, 10, 30)

        clock.moment = due_at
        child = service.generate_next_invoice(parent)

        assert child.parent_invoice_id == parent.id
        assert child.status == InvoiceStatus.PENDING
        assert child.paid_at is None
        assert child.is_recurring is False
        assert child.invoice_number == "INV-20240215-0001"
        assert child.due_date == due_at + timedelta(days=30)
        assert [(i.name, i.price, i.quantity) for i in child.items] == \
            [(i.name, i.price, i.quantity) for i in parent.items]
        assert child.total_amount == parent.total_amount
        assert child.metadata_dict == {"plan": "mensual"}
        assert parent.next_billing_date == datetime(2024, 3, 15, 10, 30)

    def test_child_keeps_tax_adjustment_and_discount(self, service, user, clock):
        parent = (
            service.builder(user, FakeTopUp())
            .item("Servicio", 100, tax_rate="0.19")
            .tax(5)
            .discount(10)
            .make_recurring("weekly")
            .create()
        )
        clock.advance(weeks=1)
        child = service.generate_next_invoice(parent)

        assert child.tax_amount == parent.tax_amount == Decimal("24.00")
        assert child.discount_amount == Decimal("10.00")
        assert child.total_amount == Decimal("114.00")

    def test_paid_callbacks_fire_once_across_chain(self, service, user, topup, clock):
        """Test el callback registrado en la origen no se repite en la hija"""
        paid = []
        parent = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .make_recurring("monthly")
            .on_paid(lambda inv: paid.append(inv.invoice_number))
            .create()
        )
        clock.moment = parent.next_billing_date
        child = service.generate_next_invoice(parent)
        assert child.pending_callbacks == []

        service.add_payment(parent, 100000, "débito automático")
        service.add_payment(child, 100000, "débito automático")

        assert paid == [parent.invoice_number]
        assert topup.paid_invoices == [parent.invoice_number, child.invoice_number]

    def test_non_recurring_returns_none(self, service, pending_invoice):
        assert service.generate_next_invoice(pending_invoice) is None

    def test_ended_recurrence_returns_none(self, service, user, topup, clock):
        parent = (
            service.builder(user, topup)
            .item("Recarga", 100000)
            .make_recurring("monthly", end_date=T0 + timedelta(days=10))
            .create()
        )
        clock.advance(days=40)
        assert service.generate_next_invoice(parent) is None

    def test_generate_due_invoices(self, service, user, topup, clock):
        weekly = service.builder(user, topup).item("Recarga", 100000).make_recurring("weekly").create()
        service.builder(user, topup).item("Recarga", 100000).make_recurring("monthly").create()
        service.builder(user, topup).item("Recarga", 100000).create()

        clock.advance(days=7)
        generated = service.generate_due_invoices()

        assert [child.parent_invoice_id for child in generated] == [weekly.id]
        assert weekly.next_billing_date == T0 + timedelta(days=14)
        # La origen ya avanzó: una segunda corrida no genera nada
        assert service.generate_due_invoices() == []

    def test_generate_due_invoices_skips_failures(self, service, user, topup, clock):
        service.builder(user, topup).item("Recarga", 100000).make_recurring("daily").create()

        def broken_builder():
            raise RuntimeError("builder no disponible")

        scheduler = RecurringScheduler(
            service.store, builder_factory=broken_builder, settings=service.settings, clock=clock
        )
        clock.advance(days=1)
        assert scheduler.generate_due_invoices() == []


# ===== TESTS DEL SERVICIO =====

class TestInvoiceService:
    """Tests para consultas, estadísticas y eliminación lógica"""

    def test_find(self, service, pending_invoice):
        assert service.find(pending_invoice.id) is pending_invoice
        assert service.find(str(pending_invoice.id)) is pending_invoice
        assert service.find_by_number("INV-20240115-0001") is pending_invoice
        assert service.find_by_number("INV-19990101-0001") is None

    def test_invoice_not_found(self, service):
        with pytest.raises(InvoiceNotFound):
            service.mark_as_paid("no-es-un-uuid")

    def test_scopes(self, service, user, topup, clock):
        overdue = (
            service.builder(user, topup).item("Recarga", 100000).due(T0 - timedelta(days=1)).create()
        )
        paid = service.builder(user, topup).item("Recarga", 100000).create()
        failed = service.builder(user, topup).item("Recarga", 100000).create()
        service.mark_as_paid(paid)
        service.mark_as_failed(failed)

        assert service.pending() == [overdue]
        assert service.paid() == [paid]
        assert service.failed() == [failed]
        assert service.overdue() == [overdue]

    def test_for_payer_and_invoiceable(self, service, topup):
        ana = FakeUser(id=1)
        luis = FakeUser(id=2, name="Luis")
        mine = service.builder(ana, topup).item("Recarga", 100000).create()
        service.builder(luis, FakeTopUp(id=11)).item("Otra", 5).create()

        assert service.for_payer(ana) == [mine]
        assert service.for_payer(("user", 1)) == [mine]
        assert service.for_payer(ana, status="paid") == []
        assert service.for_invoiceable(topup) == [mine]

    def test_stats(self, service, user):
        paid = service.builder(user, FakeTopUp()).item("A", 100).create()
        service.builder(user, FakeTopUp()).item("B", 200).due(T0 - timedelta(days=1)).create()
        failed = service.builder(user, FakeTopUp()).item("C", 50).create()
        service.mark_as_paid(paid)
        service.mark_as_failed(failed)

        stats = service.stats()
        assert stats.total == 3
        assert stats.pending == 1
        assert stats.paid == 1
        assert stats.overdue == 1
        assert stats.failed == 1
        assert stats.total_revenue == Decimal("100.00")
        assert stats.pending_revenue == Decimal("200.00")

    def test_payer_and_invoiceable_stats(self, service, user):
        topup = FakeTopUp()
        paid = service.builder(user, topup).item("A", 100).create()
        service.builder(user, topup).item("B", 200).due(T0 - timedelta(days=1)).create()
        service.builder(FakeUser(id=99), FakeTopUp(id=50)).item("Ajena", 999).create()
        service.mark_as_paid(paid)

        stats = service.payer_stats(user)
        assert stats.total_invoices == 2
        assert stats.paid_invoices == 1
        assert stats.pending_invoices == 1
        assert stats.overdue_invoices == 1
        assert stats.total_paid == Decimal("100.00")
        assert stats.total_pending == Decimal("200.00")
        assert stats.total_overdue == Decimal("200.00")

        assert service.invoiceable_stats(topup).total_invoices == 2

    def test_soft_delete_and_restore(self, service, user, topup, pending_invoice):
        service.delete(pending_invoice)

        assert pending_invoice.is_deleted
        assert service.find(pending_invoice.id) is None
        assert service.find(pending_invoice.id, include_deleted=True) is pending_invoice
        assert service.pending() == []
        # Los números de facturas eliminadas no se reutilizan
        other = service.builder(user, topup).item("Recarga", 100000).create()
        assert other.invoice_number == "INV-20240115-0002"

        service.restore(pending_invoice.id)
        assert not pending_invoice.is_deleted
        assert len(service.pending()) == 2

    def test_serialize(self, service, pending_invoice):
        service.add_payment(pending_invoice, 30000, "efectivo")
        detail = service.serialize(pending_invoice)

        assert detail.invoice_number == pending_invoice.invoice_number
        assert detail.status == InvoiceStatus.PENDING
        assert detail.paid_amount == Decimal("30000.00")
        assert detail.remaining_amount == Decimal("70000.00")
        assert [item.name for item in detail.items] == ["Recarga"]
        assert [p.amount for p in detail.payments] == [Decimal("30000.00")]


# ===== TESTS DE LOCKS Y CONCURRENCIA =====

def run_in_threads(count, target):
    """Ejecutar target(i) en count hilos que arrancan a la vez; devuelve (resultados, errores)"""
    barrier = threading.Barrier(count)
    results, errors = [], []

    def worker(i):
        barrier.wait(timeout=10)
        try:
            results.append(target(i))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors


class TestKeyedLocks:
    """Tests para los locks por llave"""

    def test_released_keys_are_discarded(self):
        locks = KeyedLocks()
        for i in range(1000):
            with locks.hold(f"invoice:{i}"):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_same_key_is_reentrant(self):
        locks = KeyedLocks()
        with locks.hold("number:INV-20240115"):
            with locks.hold("number:INV-20240115"):
                assert len(locks) == 1
            assert len(locks) == 1
        assert len(locks) == 0

    def test_key_released_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("invoice:1"):
                raise RuntimeError("falla")
        assert len(locks) == 0

    def test_holder_blocks_other_threads(self):
        """Test un segundo hilo entra solo cuando el primero suelta la llave"""
        locks = KeyedLocks()
        order = []
        entered = threading.Event()

        def second():
            entered.set()
            with locks.hold("invoice:1"):
                order.append("segundo")

        with locks.hold("invoice:1"):
            thread = threading.Thread(target=second)
            thread.start()
            entered.wait(timeout=5)
            order.append("primero")
        thread.join(timeout=5)

        assert order == ["primero", "segundo"]
        assert len(locks) == 0

    def test_service_operations_leave_no_locks(self, service, user, topup):
        invoice = service.builder(user, topup).item("Recarga", 100000).create()
        service.add_payment(invoice, 40000, "efectivo")
        service.add_payment(invoice, 60000, "efectivo")
        assert len(service.locks) == 0


class TestConcurrency:
    """Tests con varias sesiones sobre la misma base de datos"""

    @pytest.fixture
    def concurrency_settings(self):
        return Settings(DATABASE_URL="sqlite://", INVOICE_ACTIVITY_LOG_ENABLED=False)

    def test_payment_rechecks_status_from_database(self, file_engine, test_settings, clock):
        """Test un pago con una copia vieja de la factura ve el pago hecho desde otra sesión"""
        first_session = SessionLocal(bind=file_engine)
        second_session = SessionLocal(bind=file_engine)
        try:
            first = InvoiceService(first_session, settings=test_settings, clock=clock, locks=KeyedLocks())
            second = InvoiceService(second_session, settings=test_settings, clock=clock, locks=KeyedLocks())

            invoice = first.builder(FakeUser(), FakeTopUp(amount=100000)).item("Recarga", 100000).create()
            assert invoice.status == InvoiceStatus.PENDING

            second.add_payment(invoice.id, 100000, "transferencia")

            with pytest.raises(AlreadyPaid):
                first.add_payment(invoice, 1, "efectivo")

            assert invoice.status == InvoiceStatus.PAID
            assert len(first.store.list_payments(invoice.id)) == 1
        finally:
            first_session.close()
            second_session.close()

    def test_concurrent_full_payments(self, file_engine, concurrency_settings, clock):
        """Test de varios pagos simultáneos por el total solo uno se registra"""
        locks = KeyedLocks()
        session = SessionLocal(bind=file_engine)
        try:
            service = InvoiceService(session, settings=concurrency_settings, clock=clock, locks=locks)
            invoice = service.builder(FakeUser(), FakeTopUp(amount=100000)).item("Recarga", 100000).create()
            invoice_id = invoice.id
        finally:
            session.close()

        def pay(i):
            session = SessionLocal(bind=file_engine)
            try:
                service = InvoiceService(session, settings=concurrency_settings, clock=clock, locks=locks)
                return service.add_payment(invoice_id, 100000, "efectivo", reference=f"PAGO-{i}").id
            finally:
                session.close()

        results, errors = run_in_threads(5, pay)

        assert len(results) == 1
        assert len(errors) == 4
        assert all(isinstance(e, AlreadyPaid) for e in errors), errors
        assert len(locks) == 0

        session = SessionLocal(bind=file_engine)
        try:
            service = InvoiceService(session, settings=concurrency_settings, clock=clock, locks=locks)
            assert service.get_invoice(invoice_id).status == InvoiceStatus.PAID
            assert len(service.store.list_payments(invoice_id)) == 1
            assert service.get_paid_amount(invoice_id) == Decimal("100000.00")
        finally:
            session.close()

    def test_concurrent_creation_numbers_are_unique(self, file_engine, concurrency_settings, clock):
        """Test facturas creadas a la vez reciben números consecutivos sin repetir"""
        locks = KeyedLocks()

        def create(i):
            session = SessionLocal(bind=file_engine)
            try:
                service = InvoiceService(session, settings=concurrency_settings, clock=clock, locks=locks)
                invoice = service.builder(
                    FakeUser(id=i), FakeTopUp(id=i, amount=100000)
                ).item("Recarga", 100000).create()
                return invoice.invoice_number
            finally:
                session.close()

        results, errors = run_in_threads(8, create)

        assert errors == []
        assert sorted(results) == [f"INV-20240115-{n:04d}" for n in range(1, 9)]
        assert len(locks) == 0


# ===== TESTS DE CONFIGURACIÓN =====

class TestSettings:
    """Tests para la configuración"""

    def test_defaults(self):
        settings = Settings()
        assert settings.INVOICE_CURRENCY == "USD"
        assert settings.INVOICE_NUMBER_PREFIX == "INV-"
        assert settings.INVOICE_AMOUNT_TOLERANCE == Decimal("0.01")

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("INVOICE_CURRENCY", "COP")
        monkeypatch.setenv("INVOICE_CALLBACKS_ENABLED", "off")
        settings = Settings()
        assert settings.INVOICE_CURRENCY == "COP"
        assert settings.INVOICE_CALLBACKS_ENABLED is False

    def test_invalid_padding(self):
        with pytest.raises(ValidationError):
            Settings(INVOICE_NUMBER_PADDING=0)

    def test_database_url(self):
        settings = Settings(POSTGRES_HOST="db", POSTGRES_PORT=5433)
        assert settings.database_url.endswith("@db:5433/invoicing_db")
        assert Settings(DATABASE_URL="sqlite://").database_url == "sqlite://"
