from .catalog import Product, Customer, Supplier, Warehouse, AdditionalCostType
from .pricing import PriceBracket, BracketItem, CustomerCustomPrice, ProductPrice
from .purchasing import PurchaseOrder, PurchaseOrderItem, ReceivingReport, ReceivedItem, AdditionalCost
from .inventory import InventoryLedgerEntry, InventoryAdjustment, InventoryCount, InventoryCountLine
from .documents import Transfer, TransferItem, DocumentSequence
from .sales import Sale, SaleItem, SalePayment, SaleReturn, SaleReturnItem, SalesSummary
from .petty_cash import PettyCashFund, PettyCashTransaction

__all__ = [
    'Product', 'Customer', 'Supplier', 'Warehouse', 'AdditionalCostType',
    'PriceBracket', 'BracketItem', 'CustomerCustomPrice', 'ProductPrice',
    'PurchaseOrder', 'PurchaseOrderItem', 'ReceivingReport', 'ReceivedItem', 'AdditionalCost',
    'InventoryLedgerEntry', 'InventoryAdjustment', 'InventoryCount', 'InventoryCountLine',
    'Transfer', 'TransferItem', 'DocumentSequence',
    'Sale', 'SaleItem', 'SalePayment', 'SaleReturn', 'SaleReturnItem', 'SalesSummary',
    'PettyCashFund', 'PettyCashTransaction',
]
