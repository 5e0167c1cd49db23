from pos_settlement.models.database import Base, get_db
from pos_settlement.models.order import Order
from pos_settlement.models.payment import Payment

__all__ = ["Base", "get_db", "Order", "Payment"]
