"""Initial schema with all core tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates all tables for Wastewarden:
- users (donors, requesters, NGOs, admins)
- donations, requests (claimable resources)
- deliveries (NGO workflow, points latches, ratings)
- rate_limit_counters (shared rate limiting)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

OPEN_DELIVERY_FILTER = "status NOT IN ('delivered', 'cancelled', 'failed')"


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def _user_fk(table: str, column: str, ondelete: str) -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(
        [column],
        ["users.user_id"],
        name=op.f(f"fk_{table}_{column}_users"),
        ondelete=ondelete,
    )


def upgrade() -> None:
    """Apply migration: Initial schema with all core tables."""
    bind = op.get_bind()

    user_role = postgresql.ENUM(
        "donor", "requester", "ngo", "admin", name="user_role", create_type=False
    )
    user_role.create(bind, checkfirst=True)

    donation_status = postgresql.ENUM(
        "active",
        "assigned_to_ngo",
        "assigned_to_requester",
        "picked_up",
        "delivered",
        "expired",
        "cancelled",
        name="donation_status",
        create_type=False,
    )
    donation_status.create(bind, checkfirst=True)

    request_status = postgresql.ENUM(
        "pending",
        "accepted_by_donor",
        "accepted_by_ngo",
        "in_transit",
        "delivered",
        "expired",
        "cancelled",
        name="request_status",
        create_type=False,
    )
    request_status.create(bind, checkfirst=True)

    delivery_status = postgresql.ENUM(
        "assigned",
        "pickup_in_progress",
        "picked_up",
        "delivery_in_progress",
        "delivered",
        "cancelled",
        "failed",
        name="delivery_status",
        create_type=False,
    )
    delivery_status.create(bind, checkfirst=True)

    urgency = postgresql.ENUM(
        "low", "medium", "high", "critical", name="urgency", create_type=False
    )
    urgency.create(bind, checkfirst=True)

    delivery_priority = postgresql.ENUM(
        "low", "medium", "high", "urgent", name="delivery_priority", create_type=False
    )
    delivery_priority.create(bind, checkfirst=True)

    food_condition = postgresql.ENUM(
        "excellent", "good", "fair", "poor", name="food_condition", create_type=False
    )
    food_condition.create(bind, checkfirst=True)

    food_category = postgresql.ENUM(
        "cooked_food",
        "raw_ingredients",
        "packaged_food",
        "beverages",
        "dairy",
        "fruits_vegetables",
        "bakery",
        name="food_category",
        create_type=False,
    )
    food_category.create(bind, checkfirst=True)

    quantity_unit = postgresql.ENUM(
        "kg",
        "grams",
        "pieces",
        "plates",
        "boxes",
        "liters",
        name="quantity_unit",
        create_type=False,
    )
    quantity_unit.create(bind, checkfirst=True)

    acceptor_kind = postgresql.ENUM("donor", "ngo", name="acceptor_kind", create_type=False)
    acceptor_kind.create(bind, checkfirst=True)

    # =========================================================================
    # Users
    # =========================================================================
    op.create_table(
        "users",
        _uuid_pk("user_id"),
        *_timestamps(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("role", user_role, nullable=False),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_donations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ngo_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.CheckConstraint("points >= 0", name=op.f("ck_users_points_non_negative")),
        _user_fk("users", "approved_by", "SET NULL"),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_users")),
        sa.UniqueConstraint("email", name=op.f("uq_users_email")),
    )
    op.create_index("ix_users_role_active", "users", ["role", "is_active"], unique=False)
    op.create_index("ix_users_location", "users", ["latitude", "longitude"], unique=False)

    # =========================================================================
    # Donations
    # =========================================================================
    op.create_table(
        "donations",
        _uuid_pk("donation_id"),
        *_timestamps(),
        sa.Column("donor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("food_type", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", food_category, nullable=False),
        sa.Column("quantity_amount", sa.Float(), nullable=False),
        sa.Column("quantity_unit", quantity_unit, nullable=False),
        sa.Column("dietary_info", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("special_instructions", sa.String(1000), nullable=True),
        sa.Column("images", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("expiry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pickup_address", sa.String(500), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("status", donation_status, nullable=False, server_default="active"),
        sa.Column("assigned_ngo_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_requester_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("feedback", sa.String(1000), nullable=True),
        _user_fk("donations", "donor_id", "RESTRICT"),
        _user_fk("donations", "assigned_ngo_id", "SET NULL"),
        _user_fk("donations", "assigned_requester_id", "SET NULL"),
        sa.PrimaryKeyConstraint("donation_id", name=op.f("pk_donations")),
    )
    op.create_index("ix_donations_donor_id", "donations", ["donor_id"], unique=False)
    op.create_index("ix_donations_status", "donations", ["status"], unique=False)
    op.create_index("ix_donations_expiry_time", "donations", ["expiry_time"], unique=False)
    op.create_index(
        "ix_donations_location", "donations", ["latitude", "longitude"], unique=False
    )

    # =========================================================================
    # Requests
    # =========================================================================
    op.create_table(
        "requests",
        _uuid_pk("request_id"),
        *_timestamps(),
        sa.Column("requester_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("food_types", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("quantity_amount", sa.Float(), nullable=False),
        sa.Column("quantity_unit", quantity_unit, nullable=False),
        sa.Column(
            "dietary_restrictions", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column("urgency", urgency, nullable=False, server_default="medium"),
        sa.Column("special_circumstances", sa.String(1000), nullable=True),
        sa.Column("is_emergency", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "contact_preferences", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("expiry_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", request_status, nullable=False, server_default="pending"),
        sa.Column("accepted_by_kind", acceptor_kind, nullable=True),
        sa.Column("accepted_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_donation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("feedback", sa.String(1000), nullable=True),
        sa.CheckConstraint(
            "(accepted_by_kind IS NULL) = (accepted_by_id IS NULL)",
            name=op.f("ck_requests_acceptance_complete"),
        ),
        _user_fk("requests", "requester_id", "RESTRICT"),
        _user_fk("requests", "accepted_by_id", "SET NULL"),
        sa.ForeignKeyConstraint(
            ["assigned_donation_id"],
            ["donations.donation_id"],
            name=op.f("fk_requests_assigned_donation_id_donations"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("request_id", name=op.f("pk_requests")),
    )
    op.create_index("ix_requests_requester_id", "requests", ["requester_id"], unique=False)
    op.create_index(
        "ix_requests_status_expiry", "requests", ["status", "expiry_timestamp"], unique=False
    )
    op.create_index("ix_requests_location", "requests", ["latitude", "longitude"], unique=False)

    # =========================================================================
    # Deliveries
    # =========================================================================
    op.create_table(
        "deliveries",
        _uuid_pk("delivery_id"),
        *_timestamps(),
        sa.Column("ngo_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("donor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("requester_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("donation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", delivery_status, nullable=False, server_default="assigned"),
        sa.Column("priority", delivery_priority, nullable=False, server_default="medium"),
        sa.Column("pickup_address", sa.String(500), nullable=True),
        sa.Column("pickup_latitude", sa.Float(), nullable=False),
        sa.Column("pickup_longitude", sa.Float(), nullable=False),
        sa.Column("delivery_address", sa.String(500), nullable=True),
        sa.Column("delivery_latitude", sa.Float(), nullable=False),
        sa.Column("delivery_longitude", sa.Float(), nullable=False),
        sa.Column("pickup_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_actual_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_actual_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_completion_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_completion_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_latitude", sa.Float(), nullable=True),
        sa.Column("current_longitude", sa.Float(), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("food_condition_at_pickup", food_condition, nullable=True),
        sa.Column("food_condition_at_delivery", food_condition, nullable=True),
        sa.Column(
            "pickup_confirmation", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column(
            "delivery_confirmation", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column(
            "issues",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "requester_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("requester_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rating_from_donor", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "rating_from_requester", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column("donor_rated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requester_rated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(500), nullable=True),
        _user_fk("deliveries", "ngo_id", "RESTRICT"),
        _user_fk("deliveries", "donor_id", "RESTRICT"),
        _user_fk("deliveries", "requester_id", "RESTRICT"),
        _user_fk("deliveries", "cancelled_by", "SET NULL"),
        sa.ForeignKeyConstraint(
            ["donation_id"],
            ["donations.donation_id"],
            name=op.f("fk_deliveries_donation_id_donations"),
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["requests.request_id"],
            name=op.f("fk_deliveries_request_id_requests"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("delivery_id", name=op.f("pk_deliveries")),
    )
    op.create_index(
        "ix_deliveries_ngo_id_status", "deliveries", ["ngo_id", "status"], unique=False
    )
    op.create_index("ix_deliveries_donor_id", "deliveries", ["donor_id"], unique=False)
    op.create_index("ix_deliveries_requester_id", "deliveries", ["requester_id"], unique=False)
    op.create_index(
        "uq_deliveries_open_donation",
        "deliveries",
        ["donation_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_DELIVERY_FILTER),
    )
    op.create_index(
        "uq_deliveries_open_request",
        "deliveries",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_DELIVERY_FILTER),
    )

    # =========================================================================
    # Rate limiting
    # =========================================================================
    op.create_table(
        "rate_limit_counters",
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", "window_start", name=op.f("pk_rate_limit_counters")),
    )
    op.create_index(
        "ix_rate_limit_counters_expires_at",
        "rate_limit_counters",
        ["expires_at"],
        unique=False,
    )


def downgrade() -> None:
    """Revert migration: Drop all tables and enum types."""
    op.drop_table("rate_limit_counters")
    op.drop_table("deliveries")
    op.drop_table("requests")
    op.drop_table("donations")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS acceptor_kind")
    op.execute("DROP TYPE IF EXISTS quantity_unit")
    op.execute("DROP TYPE IF EXISTS food_category")
    op.execute("DROP TYPE IF EXISTS food_condition")
    op.execute("DROP TYPE IF EXISTS delivery_priority")
    op.execute("DROP TYPE IF EXISTS urgency")
    op.execute("DROP TYPE IF EXISTS delivery_status")
    op.execute("DROP TYPE IF EXISTS request_status")
    op.execute("DROP TYPE IF EXISTS donation_status")
    op.execute("DROP TYPE IF EXISTS user_role")
