from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from pos_settlement.models.database import Base

PAYMENT_AUTHORIZED = "AUTHORIZED"
PAYMENT_CAPTURED = "CAPTURED"
PAYMENT_VOIDED = "VOIDED"
PAYMENT_REFUNDED = "REFUNDED"

PAYMENT_STATUSES = (PAYMENT_AUTHORIZED, PAYMENT_CAPTURED, PAYMENT_VOIDED, PAYMENT_REFUNDED)

PROVIDER_AUTHORIZE_NET = "AUTHORIZE_NET"
PROVIDER_VALOR = "VALOR"
PROVIDER_SOCKET_TERMINAL = "SOCKET_TERMINAL"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("provider", "transaction_id", name="uq_payments_provider_transaction"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(64), nullable=False, default=PROVIDER_AUTHORIZE_NET)
    transaction_id = Column(String(255), nullable=False, index=True)
    auth_code = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default=PAYMENT_AUTHORIZED, index=True)  # AUTHORIZED | CAPTURED | VOIDED | REFUNDED
    amount = Column(Numeric(10, 2), nullable=False)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)
    raw_response = Column(JSON, nullable=True)  # whitelisted fields only, never card data
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payments")
