from buildbooks.models.gl import Account, JournalVoucher, JournalVoucherLine
from buildbooks.models.inventory import InventoryItem, InventoryReceipt
from buildbooks.models.numbering import DocumentCounter
from buildbooks.models.purchasing import PurchaseOrder, PurchaseOrderLine

__all__ = [
    # General Ledger
    "Account",
    "JournalVoucher",
    "JournalVoucherLine",
    # Purchasing
    "PurchaseOrder",
    "PurchaseOrderLine",
    # Inventory
    "InventoryItem",
    "InventoryReceipt",
    # Numbering
    "DocumentCounter",
]
