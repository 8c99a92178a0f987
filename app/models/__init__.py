# Models
from .flash_sales import FlashSale, SaleStatus
from .sale_items import SaleItem
from .stock_reservations import StockReservation, ReservationStatus
from .stock_logs import StockLog, ChangeType

__all__ = [
    "FlashSale",
    "SaleStatus",
    "SaleItem",
    "StockReservation",
    "ReservationStatus",
    "StockLog",
    "ChangeType",
]
