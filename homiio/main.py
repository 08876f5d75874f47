"""FastAPI application for Homiio saved properties and canonical addresses."""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any

import httpx
import logfire
from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Query, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.requests import Request

from . import models
from .addresses import find_or_create_canonical, resolve_address
from .database import get_db, init_db
from .errors import (
    AuthenticationError,
    ConflictError,
    HomiioError,
    NetworkError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from .schemas import (
    DEFAULT_FOLDER_NAME,
    AddressRead,
    ApiEnvelope,
    CreateFolderData,
    PropertyCreate,
    PropertyRead,
    SavedProperty,
    SavedPropertyFolder,
    SavePropertyRequest,
    UpdateFolderData,
    UpdateNotesRequest,
    require_folder_name,
)

load_dotenv()

IDENTITY_URL = os.getenv("HOMIIO_IDENTITY_URL")
CORS_ORIGINS = os.getenv(
    "HOMIIO_CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8081,http://localhost:19006",
).split(",")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Homiio API",
    description="Saved properties, folders and canonical addresses",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)

# CORS for the mobile/web client
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Errors & envelopes
# =============================================================================


def ok(data: Any = None, message: str = "") -> dict:
    return ApiEnvelope(data=data, message=message).model_dump(mode="json")


def error_body(code: str, message: str) -> dict:
    return {"success": False, "error": {"code": code, "message": message}}


@app.exception_handler(HomiioError)
async def homiio_error_handler(request: Request, exc: HomiioError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code.value, exc.message))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {"loc": (), "msg": "Invalid request"}
    field = ".".join(str(part) for part in first["loc"] if part != "body")
    message = f"{field}: {first['msg']}" if field else first["msg"]
    return JSONResponse(status_code=400, content=error_body("VALIDATION_ERROR", message))


# =============================================================================
# Authentication (delegated to the identity service)
# =============================================================================


security = HTTPBearer(auto_error=False)


async def get_current_profile_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """Resolve the bearer token to the caller's active profile id."""
    if not credentials:
        raise AuthenticationError("Authentication required")
    if not IDENTITY_URL:
        raise ServerError("Identity service is not configured")

    token = credentials.credentials
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                f"{IDENTITY_URL}/sessions/me",
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.TransportError as exc:
        raise NetworkError("Identity service unreachable") from exc

    if response.status_code in (401, 403):
        raise AuthenticationError("Invalid or expired session")
    if response.is_error:
        raise ServerError(f"Identity service returned HTTP {response.status_code}")
    profile_id = response.json().get("id")
    if not profile_id:
        raise AuthenticationError("Session has no active profile")
    return str(profile_id)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Homiio API"}


# =============================================================================
# Saved properties
# =============================================================================


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {label} ID", field=f"{label}_id") from None


def _titles(db: Session, property_ids: list[str]) -> dict[str, str]:
    """Property titles for display, keyed by property id string."""
    ids = []
    for property_id in property_ids:
        try:
            ids.append(uuid.UUID(property_id))
        except ValueError:
            continue
    if not ids:
        return {}
    rows = db.execute(select(models.Property.id, models.Property.title).where(models.Property.id.in_(ids)))
    return {str(row.id): row.title for row in rows}


def _saved_out(record: models.SavedProperty, title: str | None = None) -> SavedProperty:
    return SavedProperty(
        id=str(record.id),
        property_id=record.property_id,
        profile_id=record.profile_id,
        folder_id=str(record.folder_id) if record.folder_id else None,
        notes=record.notes,
        title=title,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _folder_out(folder: models.SavedPropertyFolder, count: int) -> SavedPropertyFolder:
    return SavedPropertyFolder(
        id=str(folder.id),
        profile_id=folder.profile_id,
        name=folder.name,
        description=folder.description or "",
        color=folder.color,
        icon=folder.icon,
        is_default=folder.is_default,
        property_count=count,
        created_at=folder.created_at,
        updated_at=folder.updated_at,
    )


def _folder_counts(db: Session, profile_id: str) -> dict[uuid.UUID, int]:
    rows = db.execute(
        select(models.SavedProperty.folder_id, func.count(models.SavedProperty.id))
        .where(models.SavedProperty.profile_id == profile_id)
        .group_by(models.SavedProperty.folder_id)
    )
    return {row[0]: row[1] for row in rows if row[0] is not None}


def _get_folder(db: Session, profile_id: str, folder_id: str) -> models.SavedPropertyFolder:
    folder = db.scalar(
        select(models.SavedPropertyFolder).where(
            models.SavedPropertyFolder.id == _parse_uuid(folder_id, "folder"),
            models.SavedPropertyFolder.profile_id == profile_id,
        )
    )
    if folder is None:
        raise NotFoundError("Folder not found")
    return folder


def _check_name_free(db: Session, profile_id: str, name: str, exclude: uuid.UUID | None = None) -> None:
    query = select(models.SavedPropertyFolder.id).where(
        models.SavedPropertyFolder.profile_id == profile_id,
        func.lower(models.SavedPropertyFolder.name) == name.lower(),
    )
    if exclude is not None:
        query = query.where(models.SavedPropertyFolder.id != exclude)
    if db.scalar(query) is not None:
        raise ConflictError("Folder with this name already exists")


def ensure_default_folder(db: Session, profile_id: str) -> models.SavedPropertyFolder:
    """Return the profile's default folder, creating it on first use."""
    folder = db.scalar(
        select(models.SavedPropertyFolder).where(
            models.SavedPropertyFolder.profile_id == profile_id,
            models.SavedPropertyFolder.is_default.is_(True),
        )
    )
    if folder is None:
        # A user folder may already carry the default name; promote it
        folder = db.scalar(
            select(models.SavedPropertyFolder).where(
                models.SavedPropertyFolder.profile_id == profile_id,
                models.SavedPropertyFolder.name == DEFAULT_FOLDER_NAME,
            )
        )
        if folder is not None:
            folder.is_default = True
            return folder
        folder = models.SavedPropertyFolder(
            profile_id=profile_id,
            name=DEFAULT_FOLDER_NAME,
            description="Default folder for saved properties",
            icon="heart",
            is_default=True,
        )
        db.add(folder)
        db.flush()
        logger.info(f"Created default folder for profile {profile_id}")
    return folder


@app.get("/api/profiles/me/saved-properties")
def list_saved_properties(
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    records = db.scalars(
        select(models.SavedProperty)
        .where(models.SavedProperty.profile_id == profile_id)
        .order_by(models.SavedProperty.created_at.desc())
    ).all()
    titles = _titles(db, [r.property_id for r in records])
    return ok([_saved_out(r, titles.get(r.property_id)) for r in records])


@app.post("/api/profiles/me/save-property")
def save_property(
    body: SavePropertyRequest,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    """Upsert keyed by (profile, property); re-saving moves it between folders."""
    if body.folder_id:
        folder = _get_folder(db, profile_id, body.folder_id)
    else:
        folder = ensure_default_folder(db, profile_id)

    query = select(models.SavedProperty).where(
        models.SavedProperty.profile_id == profile_id,
        models.SavedProperty.property_id == body.property_id,
    )
    record = db.scalar(query)
    if record is None:
        record = models.SavedProperty(
            profile_id=profile_id,
            property_id=body.property_id,
            folder_id=folder.id,
            notes=body.notes,
        )
        try:
            with db.begin_nested():
                db.add(record)
        except IntegrityError:
            # A concurrent request saved it first; fall through to the update
            record = db.scalar(query)
            if record is None:
                raise ConflictError("Property could not be saved, please retry")

    record.folder_id = folder.id
    if body.notes is not None:
        record.notes = body.notes
    db.commit()
    db.refresh(record)

    logger.info(f"Profile {profile_id} saved property {body.property_id} to {folder.id}")
    titles = _titles(db, [record.property_id])
    return ok(_saved_out(record, titles.get(record.property_id)), "Property saved successfully")


@app.delete("/api/profiles/me/saved-properties/{property_id}")
def unsave_property(
    property_id: str,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    record = db.scalar(
        select(models.SavedProperty).where(
            models.SavedProperty.profile_id == profile_id,
            models.SavedProperty.property_id == property_id,
        )
    )
    if record is None:
        raise NotFoundError("Saved property not found")
    db.delete(record)
    db.commit()
    return ok(None, "Property unsaved successfully")


@app.put("/api/profiles/me/saved-properties/{property_id}/notes")
def update_saved_property_notes(
    property_id: str,
    body: UpdateNotesRequest,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    record = db.scalar(
        select(models.SavedProperty).where(
            models.SavedProperty.profile_id == profile_id,
            models.SavedProperty.property_id == property_id,
        )
    )
    if record is None:
        raise NotFoundError("Saved property not found")
    record.notes = body.notes
    db.commit()
    db.refresh(record)
    return ok(_saved_out(record), "Property notes updated successfully")


# =============================================================================
# Folders
# =============================================================================


@app.get("/api/profiles/me/saved-property-folders")
def list_folders(
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    folders = db.scalars(
        select(models.SavedPropertyFolder)
        .where(models.SavedPropertyFolder.profile_id == profile_id)
        .order_by(models.SavedPropertyFolder.is_default.desc(), models.SavedPropertyFolder.created_at)
    ).all()
    counts = _folder_counts(db, profile_id)
    return ok({"folders": [_folder_out(f, counts.get(f.id, 0)) for f in folders]})


@app.post("/api/profiles/me/saved-property-folders", status_code=201)
def create_folder(
    body: CreateFolderData,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    name = require_folder_name(body.name)
    _check_name_free(db, profile_id, name)

    folder = models.SavedPropertyFolder(
        profile_id=profile_id,
        name=name,
        description=body.description.strip(),
        color=body.color,
        icon=body.icon,
        is_default=False,
    )
    db.add(folder)
    db.commit()
    db.refresh(folder)
    return ok(_folder_out(folder, 0), "Folder created successfully")


@app.put("/api/profiles/me/saved-property-folders/{folder_id}")
def update_folder(
    folder_id: str,
    body: UpdateFolderData,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    folder = _get_folder(db, profile_id, folder_id)
    changes = body.changes()
    if "name" in body.model_fields_set:
        changes["name"] = require_folder_name(body.name)

    if folder.is_default and any(
        key in changes and changes[key] != getattr(folder, key) for key in ("name", "color")
    ):
        raise ValidationError("Cannot rename or recolor the default folder", field="folder_id")
    if "name" in changes and changes["name"] != folder.name:
        _check_name_free(db, profile_id, changes["name"], exclude=folder.id)

    for key, value in changes.items():
        setattr(folder, key, value)
    db.commit()
    db.refresh(folder)

    counts = _folder_counts(db, profile_id)
    return ok(_folder_out(folder, counts.get(folder.id, 0)), "Folder updated successfully")


@app.delete("/api/profiles/me/saved-property-folders/{folder_id}")
def delete_folder(
    folder_id: str,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    """Delete a folder. Its properties stay saved, uncategorized."""
    folder = _get_folder(db, profile_id, folder_id)
    if folder.is_default:
        raise ValidationError("Cannot delete default folder", field="folder_id")

    moved = db.execute(
        update(models.SavedProperty)
        .where(
            models.SavedProperty.profile_id == profile_id,
            models.SavedProperty.folder_id == folder.id,
        )
        .values(folder_id=None)
    ).rowcount
    db.delete(folder)
    db.commit()

    logger.info(f"Deleted folder {folder_id}; {moved} properties now uncategorized")
    return ok(None, "Folder deleted successfully")


# =============================================================================
# Addresses & properties
# =============================================================================


@app.get("/api/addresses/search")
def search_addresses(
    query: str = Query(min_length=1),
    limit: int = Query(default=10, ge=1, le=100),
    page: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
):
    pattern = f"%{query}%"
    condition = or_(
        models.Address.street.ilike(pattern),
        models.Address.city.ilike(pattern),
        models.Address.neighborhood.ilike(pattern),
        models.Address.postal_code.ilike(pattern),
    )
    total = db.scalar(select(func.count(models.Address.id)).where(condition)) or 0
    addresses = db.scalars(
        select(models.Address)
        .where(condition)
        .order_by(models.Address.created_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()

    total_pages = (total + limit - 1) // limit
    return ok({
        "addresses": [AddressRead.model_validate(a) for a in addresses],
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_items": total,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    })


@app.get("/api/addresses/{address_id}")
def get_address(address_id: str, db: Session = Depends(get_db)):
    address = db.get(models.Address, _parse_uuid(address_id, "address"))
    if address is None:
        raise NotFoundError("Address not found")
    return ok(AddressRead.model_validate(address))


@app.post("/api/addresses")
def create_address(
    response: Response,
    fields: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
):
    """Find-or-create: 201 when a new address was stored, 200 when reused."""
    address, created = resolve_address(db, fields)
    db.commit()
    response.status_code = 201 if created else 200
    return ok(AddressRead.model_validate(address))


@app.post("/api/properties", status_code=201)
def create_property(
    body: PropertyCreate,
    profile_id: str = Depends(get_current_profile_id),
    db: Session = Depends(get_db),
):
    address = find_or_create_canonical(db, body.address)
    prop = models.Property(
        title=body.title.strip(),
        profile_id=profile_id,
        address_id=address.id,
        rent_amount=body.rent_amount,
        currency=body.currency.upper(),
    )
    db.add(prop)
    db.commit()
    db.refresh(prop)

    logger.info(f"Created property {prop.id} at address {address.normalized_key[:8]}")
    return ok({
        "property": PropertyRead.model_validate(prop),
        "address": AddressRead.model_validate(address),
    }, "Property created successfully")
