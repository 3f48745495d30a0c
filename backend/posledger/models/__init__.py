from .auth import User, SessionToken
from .customers import Customer
from .inventory import Product, InventoryTransaction, StockAdjustment, PriceChangeLog, Purchase, PurchaseItem
from .sales import Sale, SaleItem, InvoiceVersion, DocumentSequence
from .payments import Payment, PaymentIdempotency
from .audit import AuditLog, Alert

__all__ = [
    'User', 'SessionToken',
    'Customer',
    'Product', 'InventoryTransaction', 'StockAdjustment', 'PriceChangeLog', 'Purchase', 'PurchaseItem',
    'Sale', 'SaleItem', 'InvoiceVersion', 'DocumentSequence',
    'Payment', 'PaymentIdempotency',
    'AuditLog', 'Alert',
]
