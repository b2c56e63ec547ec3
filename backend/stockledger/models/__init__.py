from .tenancy import Store, Warehouse
from .inventory import Product, StockMovement, CurrentStock
from .counts import ReconciliationRecord, CountSessionRecord

__all__ = [
    'Store', 'Warehouse',
    'Product', 'StockMovement', 'CurrentStock',
    'ReconciliationRecord', 'CountSessionRecord',
]
