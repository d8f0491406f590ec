"""Pydantic schemas for the shipment API."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from shipment_engine.models import (
    AdminTaskStatus,
    AdminTaskType,
    AssignmentStatus,
    AssignmentType,
    FinalAction,
    ManifestStatus,
    ShipmentStatus,
    normalize_status,
)


# ── Request Schemas ───────────────────────────


class ShipmentBook(BaseModel):
    """Payload for booking a shipment."""

    sender_address_text: str = Field(..., min_length=1)
    receiver_address_text: str = Field(..., min_length=1)
    total_weight_kg: Decimal = Field(..., gt=0)
    route_scope: str = Field(..., min_length=1, max_length=30)
    tracking_code: str | None = Field(default=None, max_length=50)
    sender_name: str | None = None
    sender_phone: str | None = None
    sender_province_code: str | None = None
    receiver_name: str | None = None
    receiver_phone: str | None = None
    receiver_province_code: str | None = None
    service_type: str = "STANDARD"
    goods_type: str = "GENERAL"
    declared_value: Decimal = Field(default=Decimal("0"), ge=0)
    total_volume_m3: Decimal | None = Field(default=None, ge=0)
    parcel_length_cm: Decimal | None = None
    parcel_width_cm: Decimal | None = None
    parcel_height_cm: Decimal | None = None
    quoted_amount: Decimal | None = None


class TransitionRequest(BaseModel):
    """Move a shipment. Legacy status names are accepted and normalised."""

    status: ShipmentStatus
    payload: dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"branch_id": "6f1c...", "amount": "35000"}],
    )
    note: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _canonical_status(cls, value: Any) -> ShipmentStatus:
        if isinstance(value, ShipmentStatus):
            return value
        return normalize_status(str(value))


class AssignRequest(BaseModel):
    assignment_type: AssignmentType
    driver_id: uuid.UUID
    vehicle_id: uuid.UUID | None = None
    branch_id: uuid.UUID | None = None
    note: str | None = None


class ReassignRequest(BaseModel):
    assignment_type: AssignmentType
    driver_id: uuid.UUID
    vehicle_id: uuid.UUID | None = None
    note: str | None = None


class TaskResolve(BaseModel):
    resolution_code: str = Field(..., min_length=1, max_length=50)
    note: str | None = None


class HoldStart(BaseModel):
    """Either a configured policy name or an explicit number of hours."""

    policy: str | None = None
    hours: float | None = Field(default=None, gt=0)


class HoldDecision(BaseModel):
    final_action: FinalAction
    note: str | None = None


class ManifestCreate(BaseModel):
    vehicle_id: uuid.UUID
    origin_branch_id: uuid.UUID
    dest_branch_id: uuid.UUID
    route_scope: str = Field(..., min_length=1, max_length=30)
    driver_id: uuid.UUID | None = None
    note: str | None = None


class ManifestItemAdd(BaseModel):
    shipment_id: uuid.UUID


class ManifestTransition(BaseModel):
    status: ManifestStatus


# ── Response Schemas ──────────────────────────


class StatusHistoryItem(BaseModel):
    old_status: str | None
    new_status: str
    actor_type: str
    actor_id: str | None
    message: str | None
    payload: dict | None
    event_at: datetime

    model_config = {"from_attributes": True}


class ShipmentResponse(BaseModel):
    id: uuid.UUID
    tracking_code: str
    shipment_status: ShipmentStatus
    pre_issue_status: ShipmentStatus | None = None
    route_scope: str
    sender_address_text: str
    receiver_address_text: str
    total_weight_kg: Decimal
    total_volume_m3: Decimal | None = None
    assigned_branch_id: uuid.UUID | None = None
    assigned_vehicle_id: uuid.UUID | None = None
    quoted_amount: Decimal | None = None
    confirmed_amount: Decimal | None = None
    delivered_at: datetime | None = None
    closed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AssignmentResponse(BaseModel):
    id: uuid.UUID
    shipment_id: uuid.UUID
    assignment_type: AssignmentType
    driver_id: uuid.UUID
    vehicle_id: uuid.UUID | None = None
    status: AssignmentStatus
    is_active: bool

    model_config = {"from_attributes": True}


class AdminTaskResponse(BaseModel):
    id: uuid.UUID
    task_code: str
    task_type: AdminTaskType
    status: AdminTaskStatus
    shipment_id: uuid.UUID | None = None
    title: str
    resolution_code: str | None = None
    resolved_by_type: str | None = None
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}


class ReturnHoldResponse(BaseModel):
    return_order_id: uuid.UUID
    original_shipment_id: uuid.UUID
    policy: str
    hold_start_at: datetime
    hold_until_at: datetime
    pickup_by_customer_at: datetime | None = None
    final_action: FinalAction | None = None
    decided_at: datetime | None = None

    model_config = {"from_attributes": True}


class ManifestResponse(BaseModel):
    id: uuid.UUID
    manifest_code: str
    vehicle_id: uuid.UUID
    origin_branch_id: uuid.UUID
    dest_branch_id: uuid.UUID
    status: ManifestStatus

    model_config = {"from_attributes": True}
