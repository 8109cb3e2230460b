from .entity import Order, OrderLine, OrderState
from .repository import OrderRepository

__all__ = ["Order", "OrderLine", "OrderState", "OrderRepository"]
