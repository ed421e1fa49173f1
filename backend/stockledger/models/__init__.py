from .append_only import AppendOnlyMixin
from .inventory import (
    ItemType, MovementType, MOVEMENT_SIGNS, LOT_ITEM_TYPES,
    Lot, ProcessedGood, StockMovement, WasteRecord, TransferRecord,
    movement_sign, signed_quantity, movement_allowed,
)
from .orders import (
    OrderStatus, LEGACY_STATUSES, PaymentStatus, LockState,
    LockAction, AuditEvent, InventoryOperation,
    Order, ActiveOrder, PreMigrationOrder, OrderItem, OrderPayment,
    OrderLockLog, OrderAuditLog, InventoryChangeLog,
)

__all__ = [
    'AppendOnlyMixin',
    'ItemType', 'MovementType', 'MOVEMENT_SIGNS', 'LOT_ITEM_TYPES',
    'Lot', 'ProcessedGood', 'StockMovement', 'WasteRecord', 'TransferRecord',
    'movement_sign', 'signed_quantity', 'movement_allowed',
    'OrderStatus', 'LEGACY_STATUSES', 'PaymentStatus', 'LockState',
    'LockAction', 'AuditEvent', 'InventoryOperation',
    'Order', 'ActiveOrder', 'PreMigrationOrder', 'OrderItem', 'OrderPayment',
    'OrderLockLog', 'OrderAuditLog', 'InventoryChangeLog',
]
