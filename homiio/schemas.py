"""Pydantic validation schemas for Homiio saved properties and addresses.

Schema Engineering Philosophy:
- Field descriptions document the contract between the backend and its clients
- Validators enforce the same limits the database columns carry
- These schemas are the wire format: the backend returns them inside an
  ``ApiEnvelope`` and the client parses them back out
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError

T = TypeVar("T")

DEFAULT_FOLDER_NAME = "Favorites"
DEFAULT_FOLDER_COLOR = "#3B82F6"
DEFAULT_FOLDER_ICON = "folder-outline"

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


# =============================================================================
# ENUMS
# =============================================================================


class SaveState(str, Enum):
    """Client-observed lifecycle of a single property.

    UNSAVED --save--> SAVING --ok--> SAVED
    SAVING --fail--> UNSAVED
    SAVED --unsave--> UNSAVING --ok--> UNSAVED
    UNSAVING --fail--> SAVED
    """

    UNSAVED = "unsaved"
    SAVING = "saving"
    SAVED = "saved"
    UNSAVING = "unsaving"


# =============================================================================
# ADDRESSES
# =============================================================================


class GeoPoint(BaseModel):
    """A WGS84 point. Order on the wire is [longitude, latitude]."""

    lng: float = Field(ge=-180, le=180, description="Longitude in degrees")
    lat: float = Field(ge=-90, le=90, description="Latitude in degrees")


class AddressInput(BaseModel):
    """Address fields after alias normalization, ready to be keyed and stored."""

    street: str = Field(min_length=1, max_length=200, description="Street name, required")
    number: str | None = Field(default=None, max_length=20, description="Street number")
    unit: str | None = Field(default=None, max_length=50, description="Apartment / suite / door")
    floor: str | None = Field(default=None, max_length=20)
    block: str | None = Field(default=None, max_length=50)
    building_name: str | None = Field(default=None, max_length=100)
    land_plot: str | None = Field(default=None, max_length=100)
    neighborhood: str | None = Field(default=None, max_length=100)
    city: str = Field(min_length=1, max_length=100)
    state: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, max_length=20)
    country: str = Field(default="USA", max_length=100)
    country_code: str = Field(
        min_length=2,
        max_length=2,
        description="ISO 3166-1 alpha-2, upper-cased"
    )
    address_lines: list[str] = Field(
        default_factory=list,
        max_length=5,
        description="Free-form lines, at most 5 of at most 200 characters"
    )
    show_address_number: bool = True
    coordinates: GeoPoint

    @field_validator("country_code", mode="before")
    @classmethod
    def upper_country_code(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("address_lines")
    @classmethod
    def check_line_length(cls, v: list[str]) -> list[str]:
        for line in v:
            if len(line) > 200:
                raise ValueError("Address lines cannot exceed 200 characters")
        return v


class AddressRead(BaseModel):
    """Stored address as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    street: str
    number: str | None = None
    unit: str | None = None
    floor: str | None = None
    block: str | None = None
    building_name: str | None = None
    land_plot: str | None = None
    neighborhood: str | None = None
    city: str
    state: str | None = None
    postal_code: str | None = None
    country: str
    country_code: str
    address_lines: list[str] = Field(default_factory=list)
    show_address_number: bool = True
    lat: float
    lng: float
    normalized_key: str
    full_address: str
    location: str


# =============================================================================
# PROPERTIES
# =============================================================================


class PropertyCreate(BaseModel):
    """Listing payload. ``address`` is raw input and may use localized aliases."""

    title: str = Field(min_length=1, max_length=200)
    rent_amount: float | None = Field(default=None, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    address: dict[str, Any] = Field(description="Raw address fields, resolved to a canonical Address")


class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    profile_id: str
    rent_amount: float | None = None
    currency: str
    address_id: UUID
    created_at: datetime


# =============================================================================
# SAVED PROPERTIES & FOLDERS
# =============================================================================


def require_folder_name(name: str | None) -> str:
    """Return the stripped folder name or raise if it is blank."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Folder name is required", field="name")
    if len(cleaned) > 100:
        raise ValidationError("Folder name cannot exceed 100 characters", field="name")
    return cleaned


class SavedProperty(BaseModel):
    """A property saved by a profile, optionally filed in a folder."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    property_id: str
    profile_id: str
    folder_id: str | None = Field(
        default=None,
        description="None means uncategorized"
    )
    notes: str | None = None
    title: str | None = Field(default=None, description="Property title for display")
    created_at: datetime | None = Field(default=None, description="When the property was saved")
    updated_at: datetime | None = None


class SavedPropertyFolder(BaseModel):
    """Folder with a server-computed property count."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    profile_id: str | None = None
    name: str
    description: str = ""
    color: str = DEFAULT_FOLDER_COLOR
    icon: str = DEFAULT_FOLDER_ICON
    is_default: bool = False
    property_count: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CreateFolderData(BaseModel):
    name: str = Field(max_length=100)
    description: str = Field(default="", max_length=500)
    color: str = DEFAULT_FOLDER_COLOR
    icon: str = DEFAULT_FOLDER_ICON

    @field_validator("color")
    @classmethod
    def check_color(cls, v: str) -> str:
        if not HEX_COLOR.match(v):
            raise ValueError("Color must be a valid hex color code")
        return v


class UpdateFolderData(BaseModel):
    """Partial folder update. Unset fields are left untouched."""

    name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    color: str | None = None
    icon: str | None = None

    @field_validator("color")
    @classmethod
    def check_color(cls, v: str | None) -> str | None:
        if v is not None and not HEX_COLOR.match(v):
            raise ValueError("Color must be a valid hex color code")
        return v

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class SavePropertyRequest(BaseModel):
    property_id: str = Field(min_length=1)
    folder_id: str | None = Field(
        default=None,
        description="Target folder; the default folder is used when omitted"
    )
    notes: str | None = None


class UpdateNotesRequest(BaseModel):
    notes: str = ""


class SavedPropertiesSnapshot(BaseModel):
    """Authoritative server state used to reconcile the client."""

    properties: list[SavedProperty] = Field(default_factory=list)
    folders: list[SavedPropertyFolder] = Field(default_factory=list)


class BulkMoveError(BaseModel):
    property_id: str
    code: str
    message: str


class BulkMoveResult(BaseModel):
    """Outcome of moving several properties to one folder."""

    successful: int = 0
    failed: int = 0
    errors: list[BulkMoveError] = Field(default_factory=list)


# =============================================================================
# RESPONSE ENVELOPE
# =============================================================================


class ApiEnvelope(BaseModel, Generic[T]):
    """``{success, data, message}`` wrapper used by every endpoint."""

    success: bool = True
    data: T | None = None
    message: str = ""


# =============================================================================
# MAINTENANCE
# =============================================================================


class KeyMigrationStats(BaseModel):
    """Statistics from re-keying stored addresses."""

    records_processed: int = 0
    records_current: int = 0
    records_updated: int = 0
    duplicates: list[str] = Field(
        default_factory=list,
        description="'<id> -> <id>' pairs whose recomputed keys collide; left untouched"
    )

    @property
    def records_stale(self) -> int:
        return self.records_processed - self.records_current
