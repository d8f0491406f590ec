"""ORM models. Importing this package registers every table on ``Base.metadata``."""

from shipment_engine.models.assignment import (
    AssignmentStatus,
    AssignmentType,
    DriverAssignment,
    DriverAssignmentHistory,
)
from shipment_engine.models.fleet import (
    Branch,
    CapacityReservation,
    Driver,
    ReservationPurpose,
    ReservationStatus,
    ShipmentVehicleAssignmentLog,
    Vehicle,
    VehicleLoadTracking,
)
from shipment_engine.models.manifest import (
    ManifestItemStatus,
    ManifestStatus,
    TransitManifest,
    TransitManifestEvent,
    TransitManifestItem,
)
from shipment_engine.models.operations import (
    AdminTask,
    AdminTaskEvent,
    AdminTaskStatus,
    AdminTaskType,
    CallLog,
    GoodsInspection,
    PickupSchedule,
    PickupScheduleHistory,
    ScanType,
    WarehouseRole,
    WarehouseScan,
)
from shipment_engine.models.payment import (
    PaymentEventLog,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentMethod,
)
from shipment_engine.models.returns import (
    FinalAction,
    ReturnEventLog,
    ReturnOrder,
    ReturnOrderStatus,
    ReturnPolicyHold,
)
from shipment_engine.models.shipment import (
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    normalize_status,
)

__all__ = [
    "AdminTask",
    "AdminTaskEvent",
    "AdminTaskStatus",
    "AdminTaskType",
    "AssignmentStatus",
    "AssignmentType",
    "Branch",
    "CallLog",
    "CapacityReservation",
    "Driver",
    "DriverAssignment",
    "DriverAssignmentHistory",
    "FinalAction",
    "GoodsInspection",
    "ManifestItemStatus",
    "ManifestStatus",
    "PaymentEventLog",
    "PaymentIntent",
    "PaymentIntentStatus",
    "PaymentMethod",
    "PickupSchedule",
    "PickupScheduleHistory",
    "ReservationPurpose",
    "ReservationStatus",
    "ReturnEventLog",
    "ReturnOrder",
    "ReturnOrderStatus",
    "ReturnPolicyHold",
    "ScanType",
    "Shipment",
    "ShipmentStatus",
    "ShipmentStatusHistory",
    "ShipmentVehicleAssignmentLog",
    "TransitManifest",
    "TransitManifestEvent",
    "TransitManifestItem",
    "Vehicle",
    "VehicleLoadTracking",
    "WarehouseRole",
    "WarehouseScan",
]
