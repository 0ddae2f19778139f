from .organization import Branch, Staff
from .catalog import Product
from .orders import Order, OrderItem
from .shifts import Shift, CashMovement
from .audit import AuditLogEntry
from .sync import AppliedChange

__all__ = [
    'Branch', 'Staff',
    'Product',
    'Order', 'OrderItem',
    'Shift', 'CashMovement',
    'AuditLogEntry',
    'AppliedChange',
]
