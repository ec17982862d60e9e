"""Pydantic payload schemas for lifecycle operations.

Payloads are validated for shape and range before they reach a manager;
managers still check ownership and current status, which a schema cannot see.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from wastewarden.db.models.base import FoodCategory, QuantityUnit, Urgency, UserRole

Latitude = Annotated[float, Field(ge=-90.0, le=90.0)]
Longitude = Annotated[float, Field(ge=-180.0, le=180.0)]
Quantity = Annotated[float, Field(gt=0)]
Rating = Annotated[int, Field(ge=1, le=5)]


class RequestCreate(BaseModel):
    """Payload for posting a food request."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    food_types: list[str] = Field(default_factory=list)
    quantity_amount: Quantity
    quantity_unit: QuantityUnit
    dietary_restrictions: list[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM
    special_circumstances: str | None = Field(default=None, max_length=1000)
    is_emergency: bool = False
    contact_preferences: dict[str, Any] | None = None
    latitude: Latitude
    longitude: Longitude
    address: str | None = Field(default=None, max_length=500)


class RequestUpdate(BaseModel):
    """Fields a requester may change while the request is pending."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    urgency: Urgency | None = None
    special_circumstances: str | None = Field(default=None, max_length=1000)
    contact_preferences: dict[str, Any] | None = None
    is_emergency: bool | None = None


class DonationCreate(BaseModel):
    """Payload for posting a donation."""

    model_config = ConfigDict(extra="forbid")

    food_type: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    category: FoodCategory
    quantity_amount: Quantity
    quantity_unit: QuantityUnit
    dietary_info: list[str] = Field(default_factory=list)
    special_instructions: str | None = Field(default=None, max_length=1000)
    images: list[str] = Field(default_factory=list)
    expiry_time: AwareDatetime
    pickup_address: str | None = Field(default=None, max_length=500)
    latitude: Latitude
    longitude: Longitude


class DonationUpdate(BaseModel):
    """Fields a donor may change while the donation is active."""

    model_config = ConfigDict(extra="forbid")

    food_type: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    quantity_amount: Quantity | None = None
    quantity_unit: QuantityUnit | None = None
    dietary_info: list[str] | None = None
    special_instructions: str | None = Field(default=None, max_length=1000)
    expiry_time: AwareDatetime | None = None


class UserRegistration(BaseModel):
    """Payload for registering a marketplace user."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: str | None = Field(default=None, max_length=50)
    role: UserRole
    address: str | None = Field(default=None, max_length=500)
    latitude: Latitude | None = None
    longitude: Longitude | None = None
    ngo_details: dict[str, Any] | None = None
