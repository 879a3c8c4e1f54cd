from dataclasses import asdict
from datetime import datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .domain.policy import ReservationDraft, ReservationPolicy
from .models import Reservation, ReservationStatus, Table
from .utils.time import to_wall_clock


class TableWrite(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None


class TableRead(BaseModel):
    table_id: int
    name: str
    description: Optional[str]

    @classmethod
    def from_db(cls, *, table: Table) -> "TableRead":
        return cls(table_id=table.id, name=table.name, description=table.description)


class BusySlot(BaseModel):
    start_time: datetime
    end_time: datetime
    status: ReservationStatus
    all_day: bool


class ReservationWrite(BaseModel):
    """Body of create and update requests. Datetimes are wall-clock; any offset is dropped."""

    table_id: int = Field(ge=1)
    start_time: datetime
    end_time: datetime
    num_members: int = Field(default=1, ge=1)
    num_guests: int = Field(default=0, ge=0)
    all_day: bool = False
    reason: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _wall_clock(cls, value: datetime) -> datetime:
        return to_wall_clock(value)

    def to_draft(self) -> ReservationDraft:
        return ReservationDraft(
            table_id=self.table_id,
            start_time=self.start_time,
            end_time=self.end_time,
            num_members=self.num_members,
            num_guests=self.num_guests,
            all_day=self.all_day,
            reason=self.reason,
        )


class ReservationReject(BaseModel):
    reason: str = Field(min_length=1)


class ReservationRead(BaseModel):
    reservation_id: int
    table_id: int
    user_id: int
    start_time: datetime
    end_time: datetime
    num_members: int
    num_guests: int
    all_day: bool
    reason: Optional[str]
    status: ReservationStatus
    approved: bool
    rejection_reason: Optional[str]
    version: int
    table_name: Optional[str] = None

    @classmethod
    def from_db(cls, *, reservation: Reservation, table_name: Optional[str] = None) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            table_id=reservation.table_id,
            table_name=table_name,
            user_id=reservation.user_id,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            num_members=reservation.num_members,
            num_guests=reservation.num_guests,
            all_day=reservation.all_day,
            reason=reservation.reason,
            status=reservation.status,
            approved=reservation.approved,
            rejection_reason=reservation.rejection_reason,
            version=reservation.version,
        )


class PolicyRead(BaseModel):
    max_hours_per_reservation: int
    max_reservations_per_user_per_day: int
    min_hours_in_advance: int
    allowed_start_time: time
    allowed_end_time: time
    requires_approval_for_all_day: bool
    allow_consecutive_reservations: bool
    min_time_between_reservations: int

    @classmethod
    def from_policy(cls, policy: ReservationPolicy) -> "PolicyRead":
        return cls(**asdict(policy))


class PolicyUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_hours_per_reservation: Optional[int] = Field(default=None, ge=0)
    max_reservations_per_user_per_day: Optional[int] = Field(default=None, ge=0)
    min_hours_in_advance: Optional[int] = Field(default=None, ge=0)
    allowed_start_time: Optional[time] = None
    allowed_end_time: Optional[time] = None
    requires_approval_for_all_day: Optional[bool] = None
    allow_consecutive_reservations: Optional[bool] = None
    min_time_between_reservations: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _not_empty(self) -> "PolicyUpdate":
        if not self.to_patch():
            raise ValueError("no fields to update")
        return self

    def to_patch(self) -> dict:
        return self.model_dump(exclude_none=True)
