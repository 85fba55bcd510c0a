from .tenancy import Store
from .auth import User, SessionToken
from .catalog import Product, ProductVariant, Collection, CollectionProduct
from .customers import Customer
from .inventory import InventoryLocation, InventoryItem, InventoryAdjustment
from .orders import Order, OrderItem, Payment, Refund, RefundLine, OrderStatusHistory
from .returns import Return, ReturnItem
from .discounts import Discount, DiscountProduct, DiscountCollection, DiscountUsage
from .audit import AuditLog

__all__ = [
    'Store',
    'User', 'SessionToken',
    'Product', 'ProductVariant', 'Collection', 'CollectionProduct',
    'Customer',
    'InventoryLocation', 'InventoryItem', 'InventoryAdjustment',
    'Order', 'OrderItem', 'Payment', 'Refund', 'RefundLine', 'OrderStatusHistory',
    'Return', 'ReturnItem',
    'Discount', 'DiscountProduct', 'DiscountCollection', 'DiscountUsage',
    'AuditLog',
]
