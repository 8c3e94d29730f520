"""Initial schema: users, ride requests, driver presence, trip completions.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

RIDE_STATUSES = ("PENDING", "ACCEPTED", "ARRIVED", "STARTED", "COMPLETED", "CANCELLED")
ROLES = ("CLIENT", "DRIVER")


def upgrade() -> None:
    user_role = sa.Enum(*ROLES, name="user_role")

    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("role", user_role, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── ride_requests ─────────────────────────────────────────────────
    op.create_table(
        "ride_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(255), nullable=False, server_default=""),
        sa.Column("dest_lat", sa.Float, nullable=False),
        sa.Column("dest_lng", sa.Float, nullable=False),
        sa.Column("dest_address", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum(*RIDE_STATUSES, name="ride_status"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("price", sa.Float, nullable=False, server_default="0"),
        sa.Column("distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_min", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "cancelled_by",
            postgresql.ENUM(*ROLES, name="user_role", create_type=False),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_ride_requests_status", "ride_requests", ["status"])
    op.create_index("idx_ride_requests_client", "ride_requests", ["client_id"])
    op.create_index("idx_ride_requests_driver", "ride_requests", ["driver_id"])

    # ── driver_presence ───────────────────────────────────────────────
    op.create_table(
        "driver_presence",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "driver_id",
            sa.Integer,
            sa.ForeignKey("users.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("heading", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_available", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "last_seen",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_driver_presence_flags",
        "driver_presence",
        ["is_online", "is_available"],
    )

    # ── trip_completions ──────────────────────────────────────────────
    op.create_table(
        "trip_completions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "ride_id",
            sa.Integer,
            sa.ForeignKey("ride_requests.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("actual_fare", sa.Float, nullable=False),
        sa.Column("actual_distance", sa.Float, nullable=False),
        sa.Column("actual_duration", sa.Integer, nullable=False),
        sa.Column("driver_notes", sa.Text, nullable=True),
        sa.Column("client_rating", sa.Float, nullable=True),
        sa.Column("client_notes", sa.Text, nullable=True),
        sa.Column("driver_rating", sa.Float, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_trip_completions_driver", "trip_completions", ["driver_id"])
    op.create_index("idx_trip_completions_client", "trip_completions", ["client_id"])


def downgrade() -> None:
    op.drop_table("trip_completions")
    op.drop_table("driver_presence")
    op.drop_table("ride_requests")
    op.drop_table("users")
    op.execute("DROP TYPE IF EXISTS ride_status")
    op.execute("DROP TYPE IF EXISTS user_role")
