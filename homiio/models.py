"""SQLAlchemy models for Homiio addresses, properties and saved properties.

Data Architecture Overview:
- Address is deduplicated by ``normalized_key`` (SHA-1 of canonical fields)
- Property references exactly one canonical Address
- SavedProperty links a profile to a property, optionally inside a folder
- SavedPropertyFolder.property_count is NOT stored; the API counts members

Key Concepts:
- Uncategorized: a SavedProperty with folder_id = NULL
- Default folder: one per profile (is_default=True), created on first save
- Profiles live in an external identity service; we keep only their ids

See homiio/schemas.py for the Pydantic models used at the API boundary.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class Address(Base):
    """A canonical, deduplicated physical address."""

    __tablename__ = "addresses"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    street: Mapped[str] = mapped_column(String(200), nullable=False)
    number: Mapped[str | None] = mapped_column(String(20))
    unit: Mapped[str | None] = mapped_column(String(50))
    floor: Mapped[str | None] = mapped_column(String(20))
    block: Mapped[str | None] = mapped_column(String(50))
    building_name: Mapped[str | None] = mapped_column(String(100))
    land_plot: Mapped[str | None] = mapped_column(
        String(100),
        doc="Cadastral / land-plot identifier where the locale uses one"
    )
    neighborhood: Mapped[str | None] = mapped_column(String(100))
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    state: Mapped[str | None] = mapped_column(String(100))
    postal_code: Mapped[str | None] = mapped_column(String(20), index=True)
    country: Mapped[str] = mapped_column(String(100), default="USA")
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    address_lines: Mapped[list[str]] = mapped_column(JSON, default=list)
    show_address_number: Mapped[bool] = mapped_column(Boolean, default=True)
    lat: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)
    lng: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)
    normalized_key: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, index=True,
        doc="SHA-1 hex of the lower-cased key fields joined with '|'. "
            "The unique index is the actual deduplication guarantee."
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    properties: Mapped[list["Property"]] = relationship("Property", back_populates="address")

    __table_args__ = (
        Index("ix_addresses_city_state", "city", "state"),
    )

    @property
    def full_address(self) -> str:
        parts = [self.street if not self.number else f"{self.street} {self.number}"]
        if self.unit:
            parts.append(self.unit)
        parts.append(self.city)
        if self.state or self.postal_code:
            parts.append(" ".join(p for p in (self.state, self.postal_code) if p))
        return ", ".join(parts)

    @property
    def location(self) -> str:
        parts = [p for p in (self.city, self.state) if p]
        if self.country and self.country != "USA":
            parts.append(self.country)
        return ", ".join(parts)

    @property
    def coordinates(self) -> tuple[float, float]:
        """(longitude, latitude), GeoJSON order."""
        return float(self.lng), float(self.lat)

    def __repr__(self) -> str:
        return f"<Address {self.normalized_key[:8]}: {self.street}, {self.city}>"


@event.listens_for(Address, "before_insert")
@event.listens_for(Address, "before_update")
def _refresh_normalized_key(mapper, connection, target: Address) -> None:
    # Keep the key in step with the key fields on every write
    from .addresses import compute_normalized_key

    target.normalized_key = compute_normalized_key(target)


class Property(Base):
    """A rental listing. Only the address reference matters here."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    address_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=False, index=True
    )
    rent_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    address: Mapped["Address"] = relationship("Address", back_populates="properties")

    def __repr__(self) -> str:
        return f"<Property {self.id}: {self.title}>"


# =============================================================================
# SAVED PROPERTIES
# =============================================================================


class SavedPropertyFolder(Base):
    """A user-named folder of saved properties."""

    __tablename__ = "saved_property_folders"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="")
    color: Mapped[str] = mapped_column(String(7), default="#3B82F6")
    icon: Mapped[str] = mapped_column(String(50), default="folder-outline")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    saved_properties: Mapped[list["SavedProperty"]] = relationship(
        "SavedProperty", back_populates="folder"
    )

    __table_args__ = (
        UniqueConstraint("profile_id", "name", name="uq_saved_property_folders_profile_name"),
    )

    def __repr__(self) -> str:
        return f"<SavedPropertyFolder {self.name} ({self.profile_id})>"


class SavedProperty(Base):
    """One saved property per (profile, property)."""

    __tablename__ = "saved_properties"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    property_id: Mapped[str] = mapped_column(String(64), nullable=False)
    folder_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("saved_property_folders.id", ondelete="SET NULL"), index=True
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    folder: Mapped["SavedPropertyFolder"] = relationship(
        "SavedPropertyFolder", back_populates="saved_properties"
    )

    __table_args__ = (
        UniqueConstraint("profile_id", "property_id", name="uq_saved_properties_profile_property"),
    )

    def __repr__(self) -> str:
        return f"<SavedProperty {self.property_id} ({self.profile_id})>"
