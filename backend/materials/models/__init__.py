from .catalog import (
    PropertyDefinition,
    Product,
    ProductProperty,
    ProductVariant,
    VariantProperty,
    SupplierOffer,
    PriceHistoryEvent,
)
from .discounts import Discount
from .inventory import InventoryRecord, InventoryLocation, SerializedUnit, InventoryTransaction

__all__ = [
    'PropertyDefinition', 'Product', 'ProductProperty', 'ProductVariant',
    'VariantProperty', 'SupplierOffer', 'PriceHistoryEvent',
    'Discount',
    'InventoryRecord', 'InventoryLocation', 'SerializedUnit', 'InventoryTransaction',
]
