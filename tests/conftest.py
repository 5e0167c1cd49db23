import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Generator
from unittest.mock import MagicMock

# Override settings for tests before importing app modules
TEST_DATABASE_URL = "sqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["RECONCILE_ENABLED"] = "false"
os.environ["AUTHORIZE_NET_API_LOGIN_ID"] = "test-login-id"
os.environ["AUTHORIZE_NET_TRANSACTION_KEY"] = "test-transaction-key"
os.environ["VALOR_API_BASE_URL"] = "https://cloud.test/api/v1"
os.environ["VALOR_API_MERCHANT_ID"] = "merchant-test"
os.environ["VALOR_API_API_KEY"] = "api-key-test"
os.environ["VALOR_API_SECRET_KEY"] = "secret-key-test"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pos_settlement.dependencies import get_gateway_client
from pos_settlement.main import app
from pos_settlement.models.database import Base, get_db
from pos_settlement.models.order import ORDER_OPEN, Order
from pos_settlement.models.payment import PAYMENT_AUTHORIZED, PROVIDER_AUTHORIZE_NET, Payment
from pos_settlement.services.gateway_client import GatewayClient, GatewayResponse, ResponseCode

# Create test database engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

ORDER_CREATED_AT = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db_session = TestSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Session factory bound to the test database, for background workers."""
    return TestSessionLocal


@pytest.fixture
def gateway() -> MagicMock:
    """Gateway client double; tests set return values per call."""
    mock = MagicMock(spec=GatewayClient)
    mock.configured = True
    mock.get_transaction_details.return_value = None
    mock.void.return_value = GatewayResponse(ok=True, response_code=ResponseCode.APPROVED, transaction_id="void-1")
    mock.refund.return_value = GatewayResponse(ok=True, response_code=ResponseCode.APPROVED, transaction_id="refund-1")
    return mock


@pytest.fixture(scope="function")
def client(db: Session, gateway: MagicMock) -> Generator[TestClient, None, None]:
    """Create a test client with database and gateway overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def open_order(db: Session) -> Order:
    order = Order(
        invoice_number="LANE01-20240115-000001",
        lane_id="LANE-01",
        amount=Decimal("100.00"),
        status=ORDER_OPEN,
        created_by="cashier-1",
        created_at=ORDER_CREATED_AT,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


@pytest.fixture
def paid_order(db: Session, open_order: Order) -> Order:
    """An order paid by an authorized (not yet settled) gateway transaction."""
    open_order.status = "PAID"
    db.add(
        Payment(
            order_id=open_order.id,
            provider=PROVIDER_AUTHORIZE_NET,
            transaction_id="60123456789",
            auth_code="AUTH01",
            status=PAYMENT_AUTHORIZED,
            amount=Decimal("100.00"),
            refunded_amount=Decimal("0.00"),
        )
    )
    db.commit()
    db.refresh(open_order)
    return open_order
