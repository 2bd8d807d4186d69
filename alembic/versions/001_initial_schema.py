"""Initial schema: stations, routes and stops.

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "stations",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("code", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "routes",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("expected_start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("route_number", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(255), nullable=False),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column("bikes_allowed", sa.SmallInteger(), nullable=False),
        sa.Column("wheelchair_accessible", sa.SmallInteger(), nullable=False),
        sa.Column("route_type", sa.SmallInteger(), nullable=False),
        sa.Column("real_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expected_end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("real_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", "expected_start_time"),
        sa.CheckConstraint("bikes_allowed IN (0, 1, 2)", name="ck_routes_bikes_allowed"),
        sa.CheckConstraint(
            "wheelchair_accessible IN (0, 1, 2)", name="ck_routes_wheelchair_accessible"
        ),
        sa.CheckConstraint("route_type IN (2, 3)", name="ck_routes_route_type"),
    )
    op.create_index("ix_routes_unfinished", "routes", ["real_start_time", "real_end_time"])
    op.create_index("ix_routes_route_number", "routes", ["route_number"])

    op.create_table(
        "stops",
        sa.Column("route_id", sa.String(255), nullable=False),
        sa.Column("route_expected_start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.SmallInteger(), nullable=False),
        sa.Column("station_id", sa.String(255), nullable=False),
        sa.Column("expected_arrival", sa.DateTime(timezone=True), nullable=False),
        sa.Column("real_arrival", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expected_departure", sa.DateTime(timezone=True), nullable=False),
        sa.Column("real_departure", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("route_id", "route_expected_start_time", "sequence"),
        sa.ForeignKeyConstraint(["station_id"], ["stations.id"]),
        sa.ForeignKeyConstraint(
            ["route_id", "route_expected_start_time"],
            ["routes.id", "routes.expected_start_time"],
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("sequence >= 1", name="ck_stops_sequence"),
    )
    op.create_index("ix_stops_station_id", "stops", ["station_id"])


def downgrade() -> None:
    op.drop_index("ix_stops_station_id", table_name="stops")
    op.drop_table("stops")
    op.drop_index("ix_routes_route_number", table_name="routes")
    op.drop_index("ix_routes_unfinished", table_name="routes")
    op.drop_table("routes")
    op.drop_table("stations")
