from __future__ import annotations

from datetime import datetime, time
from enum import StrEnum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKey, Index, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, DateTime, Integer, String, Time


class Base(DeclarativeBase):
    pass


# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer, "sqlite")


class UserRole(StrEnum):
    MEMBER = "member"
    ADMIN = "admin"


class ReservationStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REJECTED = "rejected"


# Statuses that hold a slot and count towards quotas.
BLOCKING_STATUSES = frozenset({ReservationStatus.ACTIVE, ReservationStatus.PENDING})
TERMINAL_STATUSES = frozenset(
    {ReservationStatus.CANCELLED, ReservationStatus.COMPLETED, ReservationStatus.REJECTED}
)


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(_str_enum(UserRole), nullable=False, default=UserRole.MEMBER)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Table(Base):
    __tablename__ = "tables"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    reservations: Mapped[list["Reservation"]] = relationship(back_populates="table")


class ReservationConfig(Base):
    """Single-row table (id = 1) holding the administrator-editable booking policy."""

    __tablename__ = "reservation_config"
    __table_args__ = (
        CheckConstraint("allowed_start_time < allowed_end_time", name="chk_config_window"),
        CheckConstraint("max_hours_per_reservation >= 0", name="chk_config_max_hours"),
        CheckConstraint("max_reservations_per_user_per_day >= 0", name="chk_config_max_per_day"),
        CheckConstraint("min_hours_in_advance >= 0", name="chk_config_advance"),
        CheckConstraint("min_time_between_reservations >= 0", name="chk_config_gap"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    max_hours_per_reservation: Mapped[int] = mapped_column(Integer, nullable=False)
    max_reservations_per_user_per_day: Mapped[int] = mapped_column(Integer, nullable=False)
    min_hours_in_advance: Mapped[int] = mapped_column(Integer, nullable=False)
    allowed_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    allowed_end_time: Mapped[time] = mapped_column(Time, nullable=False)
    requires_approval_for_all_day: Mapped[bool] = mapped_column(Boolean, nullable=False)
    allow_consecutive_reservations: Mapped[bool] = mapped_column(Boolean, nullable=False)
    min_time_between_reservations: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="chk_res_time"),
        CheckConstraint("num_members >= 1", name="chk_res_members"),
        CheckConstraint("num_guests >= 0", name="chk_res_guests"),
        Index("idx_res_table_start", "table_id", "start_time"),
        Index("idx_res_user_start", "user_id", "start_time"),
        Index("idx_res_status_end", "status", "end_time"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    table_id: Mapped[int] = mapped_column(ForeignKey("tables.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    # Wall-clock instants; no UTC offset is stored or applied.
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    num_members: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    num_guests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ReservationStatus] = mapped_column(
        _str_enum(ReservationStatus),
        nullable=False,
        default=ReservationStatus.ACTIVE,
    )
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    table: Mapped["Table"] = relationship(back_populates="reservations")
