from .inventory import Product, StockMovement, MovementKind, Lot, LotMovement, LotMovementKind
from .sales import Sale, SaleItem, SaleItemLot

__all__ = [
    'Product', 'StockMovement', 'MovementKind',
    'Lot', 'LotMovement', 'LotMovementKind',
    'Sale', 'SaleItem', 'SaleItemLot',
]
