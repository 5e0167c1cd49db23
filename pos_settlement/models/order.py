from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from pos_settlement.models.database import Base

ORDER_OPEN = "OPEN"
ORDER_PAID = "PAID"
ORDER_VOIDED = "VOIDED"
ORDER_REFUNDED = "REFUNDED"

ORDER_STATUSES = (ORDER_OPEN, ORDER_PAID, ORDER_VOIDED, ORDER_REFUNDED)

# VOIDED and REFUNDED are terminal: no outgoing edges.
ORDER_TRANSITIONS = {
    ORDER_OPEN: {ORDER_PAID},
    ORDER_PAID: {ORDER_VOIDED, ORDER_REFUNDED},
    ORDER_VOIDED: set(),
    ORDER_REFUNDED: set(),
}


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(64), unique=True, index=True, nullable=False)
    lane_id = Column(String(32), index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=ORDER_OPEN, index=True)  # OPEN | PAID | VOIDED | REFUNDED
    created_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    payments = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.created_at.desc(), Payment.id.desc()",
    )

    @property
    def latest_payment(self):
        return self.payments[0] if self.payments else None
