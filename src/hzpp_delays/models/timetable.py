"""Timetable tables: stations, routes and their stops."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    SmallInteger,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from hzpp_delays.models.base import Base


class StationRecord(Base):
    """Station reference data from the planner."""

    __tablename__ = "stations"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    code: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)


class RouteRecord(Base):
    """One scheduled journey on one day."""

    __tablename__ = "routes"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    expected_start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )
    route_number: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    # Raw planner encoding: 1 true, 0 and 2 false
    bikes_allowed: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    wheelchair_accessible: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    route_type: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    real_start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expected_end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    real_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_routes_unfinished", "real_start_time", "real_end_time"),
        Index("ix_routes_route_number", "route_number"),
        CheckConstraint("bikes_allowed IN (0, 1, 2)", name="ck_routes_bikes_allowed"),
        CheckConstraint(
            "wheelchair_accessible IN (0, 1, 2)", name="ck_routes_wheelchair_accessible"
        ),
        CheckConstraint("route_type IN (2, 3)", name="ck_routes_route_type"),
    )


class StopRecord(Base):
    """Scheduled and observed times of one station visit."""

    __tablename__ = "stops"

    route_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    route_expected_start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )
    sequence: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    station_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("stations.id"), nullable=False
    )
    expected_arrival: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    real_arrival: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expected_departure: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    real_departure: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["route_id", "route_expected_start_time"],
            ["routes.id", "routes.expected_start_time"],
            ondelete="CASCADE",
        ),
        Index("ix_stops_station_id", "station_id"),
        CheckConstraint("sequence >= 1", name="ck_stops_sequence"),
    )
