"""Base model definitions, column types and shared enums.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common annotated column types for UUIDs and timestamps
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, Enum, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key; the application assigns uuid4 before flush, the server
# default covers rows inserted outside the ORM.
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    ),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
LongString = Annotated[str, mapped_column(String(1000))]


class Base(DeclarativeBase):
    """Declarative base for all Wastewarden models."""

    metadata = metadata
    registry = type_registry


def pg_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Postgres enum column type persisting member values (not member names)."""
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# Common Enums
# =============================================================================


class UserRole(enum.Enum):
    """Marketplace role of a user.

    Values:
        DONOR: Posts surplus food donations
        REQUESTER: Posts time-boxed food requests
        NGO: Moves donations to requesters (must be approved)
        ADMIN: Operator; approves NGOs and can cancel any delivery
    """

    DONOR = "donor"
    REQUESTER = "requester"
    NGO = "ngo"
    ADMIN = "admin"


class DonationStatus(enum.Enum):
    """Donation lifecycle states.

    States:
        ACTIVE: Posted and claimable
        ASSIGNED_TO_NGO: Claimed by an NGO delivery
        ASSIGNED_TO_REQUESTER: Claimed directly by a requester via donor acceptance
        PICKED_UP: Food has left the donor
        DELIVERED: Food reached the requester
        EXPIRED: expiry_time passed while still active
        CANCELLED: Withdrawn by the donor, or lost in a failed delivery
    """

    ACTIVE = "active"
    ASSIGNED_TO_NGO = "assigned_to_ngo"
    ASSIGNED_TO_REQUESTER = "assigned_to_requester"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RequestStatus(enum.Enum):
    """Request lifecycle states.

    States:
        PENDING: Waiting for an acceptor until expiry_timestamp
        ACCEPTED_BY_DONOR: A donor committed one of their donations
        ACCEPTED_BY_NGO: An NGO created a delivery for it
        IN_TRANSIT: Food is on its way
        DELIVERED: Requester has the food
        EXPIRED: Nobody accepted before expiry_timestamp
        CANCELLED: Withdrawn by the requester
    """

    PENDING = "pending"
    ACCEPTED_BY_DONOR = "accepted_by_donor"
    ACCEPTED_BY_NGO = "accepted_by_ngo"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class DeliveryStatus(enum.Enum):
    """Delivery workflow states.

    States:
        ASSIGNED: NGO claimed the donation/request pair
        PICKUP_IN_PROGRESS: NGO is on its way to the donor
        PICKED_UP: Transit marker between pickup and delivery; never a resting state
        DELIVERY_IN_PROGRESS: Food collected, heading to the requester
        DELIVERED: Handed over; points computed but not yet awarded
        CANCELLED: Aborted by the NGO or an admin; resources released
        FAILED: Lost in transit; donation written off, request re-opened
    """

    ASSIGNED = "assigned"
    PICKUP_IN_PROGRESS = "pickup_in_progress"
    PICKED_UP = "picked_up"
    DELIVERY_IN_PROGRESS = "delivery_in_progress"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Urgency(enum.Enum):
    """Requester-declared urgency."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DeliveryPriority(enum.Enum):
    """Delivery priority derived from request urgency."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class FoodCondition(enum.Enum):
    """Condition of food observed at pickup or delivery."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class FoodCategory(enum.Enum):
    COOKED_FOOD = "cooked_food"
    RAW_INGREDIENTS = "raw_ingredients"
    PACKAGED_FOOD = "packaged_food"
    BEVERAGES = "beverages"
    DAIRY = "dairy"
    FRUITS_VEGETABLES = "fruits_vegetables"
    BAKERY = "bakery"


class QuantityUnit(enum.Enum):
    KG = "kg"
    GRAMS = "grams"
    PIECES = "pieces"
    PLATES = "plates"
    BOXES = "boxes"
    LITERS = "liters"


class AcceptorKind(enum.Enum):
    """Kind of party that accepted a request."""

    DONOR = "donor"
    NGO = "ngo"


class IssueType(enum.Enum):
    """Categories of problems reported against a delivery."""

    PICKUP_DELAY = "pickup_delay"
    DELIVERY_DELAY = "delivery_delay"
    FOOD_QUALITY = "food_quality"
    LOCATION_ISSUE = "location_issue"
    CONTACT_ISSUE = "contact_issue"
    OTHER = "other"
