"""Canonical address resolution.

Raw address input arrives from forms in several locales, so the same field
can show up under different names (``zip`` / ``postcode`` / ``codigo_postal``).
Resolution runs in three steps:

1. ``normalize_aliases`` folds every recognized synonym into one canonical
   field name and derives the ISO-2 country code
2. ``compute_normalized_key`` fingerprints the key fields (SHA-1, '|' joined)
3. ``find_or_create_canonical`` looks the key up and inserts on a miss

The unique index on ``addresses.normalized_key`` is what actually prevents
duplicates. The lookup in step 3 only saves a round-trip in the common case.
"""

import hashlib
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, ValidationError
from .models import Address
from .schemas import AddressInput, GeoPoint, KeyMigrationStats

logger = logging.getLogger(__name__)


# =============================================================================
# Country Code Normalization
# =============================================================================

# Map of common country names to ISO 3166-1 alpha-2 codes (keys upper-cased)
COUNTRY_CODES = {
    "USA": "US", "US": "US",
    "UNITED STATES": "US", "UNITED STATES OF AMERICA": "US",
    "CANADA": "CA",
    "UNITED KINGDOM": "GB", "GREAT BRITAIN": "GB", "ENGLAND": "GB", "UK": "GB",
    "SPAIN": "ES", "ESPAÑA": "ES", "ESPANA": "ES",
    "FRANCE": "FR",
    "GERMANY": "DE", "DEUTSCHLAND": "DE",
    "ITALY": "IT", "ITALIA": "IT",
    "MEXICO": "MX", "MÉXICO": "MX",
    "BRAZIL": "BR", "BRASIL": "BR",
    "ARGENTINA": "AR",
    "COLOMBIA": "CO",
    "CHILE": "CL",
    "PERU": "PE", "PERÚ": "PE",
    "PORTUGAL": "PT",
    "NETHERLANDS": "NL",
    "BELGIUM": "BE",
    "AUSTRIA": "AT",
    "SWITZERLAND": "CH",
    "SWEDEN": "SE",
    "NORWAY": "NO",
    "DENMARK": "DK",
    "FINLAND": "FI",
}

# First name listed per code, used when only a code is supplied
COUNTRY_NAMES = {
    "US": "USA", "CA": "Canada", "GB": "United Kingdom", "ES": "Spain",
    "FR": "France", "DE": "Germany", "IT": "Italy", "MX": "Mexico",
    "BR": "Brazil", "AR": "Argentina", "CO": "Colombia", "CL": "Chile",
    "PE": "Peru", "PT": "Portugal", "NL": "Netherlands", "BE": "Belgium",
    "AT": "Austria", "CH": "Switzerland", "SE": "Sweden", "NO": "Norway",
    "DK": "Denmark", "FI": "Finland",
}

DEFAULT_COUNTRY = "USA"


def normalize_country_code(country: str | None) -> str | None:
    """Resolve a country name to ISO-2.

    Names missing from COUNTRY_CODES fall back to their first two letters,
    which is only a guess (``"Ireland"`` -> ``"IR"``, really ``"IE"``).
    """
    if not country or not country.strip():
        return None
    clean = country.strip().upper()
    return COUNTRY_CODES.get(clean, clean[:2])


# =============================================================================
# Alias Normalization
# =============================================================================

# canonical field -> accepted spellings. Earlier spellings win.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "street": ("street", "street_address", "streetAddress", "calle"),
    "number": ("number", "street_number", "streetNumber", "house_number", "numero"),
    "unit": ("unit", "apartment", "apt", "suite", "puerta", "door"),
    "floor": ("floor", "piso", "planta", "level"),
    "block": ("block", "bloque", "portal"),
    "building_name": ("building_name", "buildingName", "building"),
    "land_plot": ("land_plot", "landPlot", "parcela", "plot", "lot"),
    "neighborhood": ("neighborhood", "neighbourhood", "barrio"),
    "city": ("city", "town", "locality", "ciudad"),
    "state": ("state", "province", "region", "provincia"),
    "postal_code": (
        "postal_code", "postalCode", "zip", "zipCode", "zip_code",
        "postcode", "codigo_postal", "cp",
    ),
    "country": ("country", "pais"),
    "country_code": ("country_code", "countryCode"),
    "show_address_number": ("show_address_number", "showAddressNumber"),
}

LINE_KEYS = ("line1", "line2", "line3", "line4", "line5")

# Order matters: it is the hashed order and must never change
KEY_FIELDS = (
    "street",
    "number",
    "unit",
    "building_name",
    "block",
    "city",
    "state",
    "postal_code",
    "country_code",
)
KEY_SEPARATOR = "|"


def _clean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        value = str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def normalize_aliases(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Fold localized synonyms into canonical field names.

    For each canonical field the first non-empty spelling in FIELD_ALIASES
    wins, so the result does not depend on the order of keys in ``raw``.
    Unrecognized keys are dropped, except the coordinate keys which are
    passed through untouched for ``extract_point``.
    """
    result: dict[str, Any] = {}

    for canonical, spellings in FIELD_ALIASES.items():
        for spelling in spellings:
            value = _clean(raw.get(spelling))
            if value is not None:
                result[canonical] = value
                break

    raw_lines = raw.get("address_lines") or []
    if isinstance(raw_lines, str):
        raw_lines = [raw_lines]
    lines = [_clean(line) for line in raw_lines]
    lines += [_clean(raw.get(key)) for key in LINE_KEYS]
    result["address_lines"] = [line for line in lines if line]

    for key in ("country", "country_code"):
        if key in result and not isinstance(result[key], str):
            raise ValidationError(f"{key} must be a string", field=key)

    code = result.get("country_code")
    if code:
        result["country_code"] = code.upper()
        result.setdefault("country", COUNTRY_NAMES.get(result["country_code"], result["country_code"]))
    else:
        result.setdefault("country", DEFAULT_COUNTRY)
        result["country_code"] = normalize_country_code(result["country"])

    for key in ("coordinates", "location", "lng", "lat", "longitude", "latitude"):
        if key in raw:
            result[key] = raw[key]

    return result


# =============================================================================
# Key Computation
# =============================================================================


def _field(address: Any, name: str) -> Any:
    if isinstance(address, Mapping):
        return address.get(name)
    return getattr(address, name, None)


def compute_normalized_key(address: Any) -> str:
    """SHA-1 hex digest of the canonical key fields.

    ``address`` may be a mapping, a pydantic model or an ORM row. Values are
    trimmed and lower-cased (country code upper-cased), empty ones dropped,
    and the rest joined with '|' in KEY_FIELDS order.
    """
    parts = []
    for name in KEY_FIELDS:
        value = _field(address, name)
        if value is None:
            continue
        value = str(value).strip()
        value = value.upper() if name == "country_code" else value.lower()
        if value:
            parts.append(value)
    return hashlib.sha1(KEY_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


# =============================================================================
# Find-or-create
# =============================================================================


def extract_point(fields: Mapping[str, Any]) -> GeoPoint:
    """Pull a [lng, lat] pair out of any of the accepted coordinate shapes."""
    coords = fields.get("coordinates", fields.get("location"))
    if isinstance(coords, Mapping):
        if "coordinates" in coords:
            coords = coords["coordinates"]
        else:
            coords = (
                coords.get("lng", coords.get("longitude")),
                coords.get("lat", coords.get("latitude")),
            )
    if coords is None:
        coords = (
            fields.get("lng", fields.get("longitude")),
            fields.get("lat", fields.get("latitude")),
        )

    if not isinstance(coords, (list, tuple)) or len(coords) != 2 or None in coords:
        raise ValidationError(
            "Coordinates are required as [longitude, latitude]",
            field="coordinates",
        )
    try:
        return GeoPoint(lng=coords[0], lat=coords[1])
    except PydanticValidationError as exc:
        raise ValidationError(
            "Coordinates must be [longitude, latitude] with longitude in "
            "[-180, 180] and latitude in [-90, 90]",
            field="coordinates",
            context={"errors": exc.errors(include_url=False)},
        ) from exc


def validate_address(fields: Mapping[str, Any]) -> AddressInput:
    """Normalize aliases and validate into an AddressInput."""
    point = extract_point(fields)
    normalized = normalize_aliases(fields)
    for key in ("coordinates", "location", "lng", "lat", "longitude", "latitude"):
        normalized.pop(key, None)
    try:
        return AddressInput(**normalized, coordinates=point)
    except PydanticValidationError as exc:
        first = exc.errors(include_url=False)[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ValidationError(
            f"{field}: {first['msg']}",
            field=field,
            context={"errors": exc.errors(include_url=False)},
        ) from exc


def find_by_key(session: Session, normalized_key: str) -> Address | None:
    return session.scalar(select(Address).where(Address.normalized_key == normalized_key))


def resolve_address(session: Session, fields: Mapping[str, Any]) -> tuple[Address, bool]:
    """Return ``(address, created)`` for ``fields``, inserting the row if new.

    An existing row is returned unchanged, so the first writer decides field
    content. A concurrent insert of the same key surfaces as an IntegrityError
    on flush; it is answered with one more lookup, and only if that also
    misses is a ConflictError raised.

    The caller owns the transaction and must commit.
    """
    data = validate_address(fields)
    key = compute_normalized_key(data)

    existing = find_by_key(session, key)
    if existing is not None:
        logger.debug(f"Address {key[:8]} already exists")
        return existing, False

    address = Address(
        **data.model_dump(exclude={"coordinates"}),
        lat=data.coordinates.lat,
        lng=data.coordinates.lng,
        normalized_key=key,
    )
    try:
        with session.begin_nested():
            session.add(address)
    except IntegrityError:
        logger.info(f"Address {key[:8]} was created concurrently, retrying lookup")
        existing = find_by_key(session, key)
        if existing is None:
            raise ConflictError(
                "Address could not be created, please retry",
                context={"normalized_key": key},
            )
        return existing, False

    logger.info(f"Created address {key[:8]}: {data.street}, {data.city}")
    return address, True


def find_or_create_canonical(session: Session, fields: Mapping[str, Any]) -> Address:
    """Resolve raw address fields to their single stored Address."""
    address, _ = resolve_address(session, fields)
    return address


# =============================================================================
# Key maintenance
# =============================================================================


def _legacy_backfill(address: Address) -> dict[str, Any]:
    """Values missing on rows written before country codes and lines existed."""
    backfill: dict[str, Any] = {}
    if not (address.country_code or "").strip():
        backfill["country_code"] = normalize_country_code(address.country or DEFAULT_COUNTRY)
    if address.address_lines is None:
        backfill["address_lines"] = []
    return backfill


def migrate_normalized_keys(session: Session, *, dry_run: bool = False) -> KeyMigrationStats:
    """Back-fill legacy rows, then recompute every key and rewrite drifted ones.

    Keys drift when rows were written before the key fields or their
    normalization changed. A recomputed key that matches another row is a
    duplicate: it is reported and neither row is modified.
    """
    stats = KeyMigrationStats()
    addresses = session.scalars(select(Address).order_by(Address.created_at)).all()
    owners = {address.normalized_key: address for address in addresses}

    for address in addresses:
        stats.records_processed += 1
        backfill = _legacy_backfill(address)
        key = compute_normalized_key(
            {**{name: getattr(address, name) for name in KEY_FIELDS}, **backfill}
        )
        if key == address.normalized_key and not backfill:
            stats.records_current += 1
            continue

        owner = owners.get(key)
        if owner is not None and owner is not address:
            stats.duplicates.append(f"{address.id} -> {owner.id}")
            continue

        logger.info(f"Re-keying address {address.id}: {address.normalized_key[:8]} -> {key[:8]}")
        owners.pop(address.normalized_key, None)
        owners[key] = address
        if not dry_run:
            for name, value in backfill.items():
                setattr(address, name, value)
            address.normalized_key = key
        stats.records_updated += 1

    if dry_run:
        session.rollback()
    else:
        session.commit()
    return stats
