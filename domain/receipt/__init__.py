from .entity import Receipt, LineItemV2, ReceiptKind
from .lines import derive_line_items, reconcile

__all__ = ["Receipt", "LineItemV2", "ReceiptKind", "derive_line_items", "reconcile"]
