"""
Shared fixtures.

Every session in the tests shares one in-memory SQLite connection, so a test
must end its own read transaction (``db.commit()``) before the sweeper, the
outbox dispatcher or an HTTP request opens another session.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["OUTBOX_ENABLED"] = "false"
os.environ["PAGBANK_TOKEN"] = "test-token"

import datetime as dt
import itertools
from decimal import Decimal
from types import SimpleNamespace

import pytest

from order_service import crud, database
from order_service.expiration import PaymentExpirationSweeper
from order_service.models import (
    Address,
    Base,
    CartItem,
    Customer,
    PaymentMethod,
    PaymentStatus,
    Product,
    ShippingMethod,
)
from order_service.notifications import OrderNotifier, OutboxDispatcher
from order_service.pagbank import ChargeResult
from order_service.schemas import CreateOrderRequest, CreditCardData

NOW = dt.datetime(2026, 3, 10, 12, 0, tzinfo=dt.timezone.utc)

CARD = CreditCardData(encrypted="ENCRYPTED-CARD-BLOB", holder_name="Maria Silva", holder_cpf="12345678909")


class FakeGateway:
    """Stands in for PagBankClient. Queue results in ``results`` to override the defaults."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.results = []
        self.status_results = {}
        self.requests = []
        self.cancelled = []
        self.refunded = []

    def create_charge(self, request):
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        n = next(self._ids)
        if request.method == PaymentMethod.PIX:
            return ChargeResult(
                success=True,
                payment_status=PaymentStatus.WAITING,
                gateway_status="WAITING",
                charge_id=f"ORDE_{n}",
                pix_qr_code="00020101021226830014br.gov.bcb.pix",
                pix_qr_code_image=f"https://sandbox.api.pagseguro.com/qrcode/ORDE_{n}/png",
                pix_expires_at=NOW + dt.timedelta(minutes=15),
            )
        return ChargeResult(
            success=True,
            payment_status=PaymentStatus.PAID,
            gateway_status="PAID",
            charge_id=f"CHAR_{n}",
        )

    def get_charge_status(self, charge_id):
        return self.status_results.get(charge_id) or ChargeResult(
            success=False, payment_status=PaymentStatus.DECLINED, error_message="not found"
        )

    def cancel_charge(self, charge_id, amount=None):
        self.cancelled.append(charge_id)
        return True

    def refund_charge(self, charge_id, amount=None):
        self.refunded.append((charge_id, amount))
        return True


@pytest.fixture
def db():
    Base.metadata.create_all(bind=database.engine)
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def published():
    return []


@pytest.fixture
def dispatcher(published):
    return OutboxDispatcher(publisher=lambda routing_key, payload: published.append((routing_key, payload)))


@pytest.fixture
def notifier(dispatcher):
    return OrderNotifier(outbox=dispatcher)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sweeper(notifier, gateway):
    return PaymentExpirationSweeper(notifier=notifier, gateway=gateway)


@pytest.fixture
def seed(db):
    customer = Customer(name="Maria Silva", email="maria@example.com", cpf="123.456.789-09", phone="(11) 98765-4321")
    db.add(customer)
    db.flush()

    other = Customer(name="João Souza", email="joao@example.com", cpf="98765432100", phone="11912345678")
    shipping = ShippingMethod(
        name="PAC",
        description="Correios PAC",
        base_cost=Decimal("15.00"),
        per_kg_cost=Decimal("5.00"),
        free_above=None,
        min_days=3,
        max_days=8,
    )
    product = Product(name="Camiseta Básica", price=Decimal("100.00"), stock=1, weight=Decimal("0.300"))
    spare = Product(name="Boné Aba Reta", price=Decimal("50.00"), stock=5, weight=None)
    db.add_all([other, shipping, product, spare])
    db.flush()

    address = Address(
        customer_id=customer.id,
        street="Rua das Flores",
        number="100",
        neighborhood="Centro",
        city="São Paulo",
        state="SP",
        zip_code="01001-000",
    )
    other_address = Address(
        customer_id=other.id,
        street="Av. Paulista",
        number="1500",
        neighborhood="Bela Vista",
        city="São Paulo",
        state="SP",
        zip_code="01310-200",
    )
    db.add_all([address, other_address])
    db.flush()

    ids = SimpleNamespace(
        customer_id=customer.id,
        other_customer_id=other.id,
        address_id=address.id,
        other_address_id=other_address.id,
        shipping_id=shipping.id,
        product_id=product.id,
        spare_id=spare.id,
    )
    db.commit()
    return ids


@pytest.fixture
def order_request(seed):
    def build(method=PaymentMethod.PIX, quantity=1, product_id=None, **overrides):
        data = {
            "address_id": seed.address_id,
            "shipping_method_id": seed.shipping_id,
            "items": [{"product_id": product_id or seed.product_id, "quantity": quantity}],
            "payment_method": method,
        }
        if method == PaymentMethod.CREDIT_CARD:
            data["credit_card"] = CARD
        data.update(overrides)
        return CreateOrderRequest(**data)

    return build


@pytest.fixture
def place_order(db, seed, gateway, notifier, order_request):
    def place(method=PaymentMethod.PIX, quantity=1, now=NOW, **overrides):
        data = order_request(method=method, quantity=quantity, **overrides)
        return crud.create_order(db, seed.customer_id, data, gateway=gateway, notifier=notifier, now=now)

    return place


@pytest.fixture
def stock(db):
    def read(product_id):
        return db.query(Product.stock).filter(Product.id == product_id).scalar()

    return read


@pytest.fixture
def add_to_cart(db, seed):
    def add(product_id, quantity=1):
        db.add(CartItem(customer_id=seed.customer_id, product_id=product_id, quantity=quantity))
        db.commit()

    return add
