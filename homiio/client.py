"""Async HTTP client for the saved-properties and address endpoints.

Wraps every call in the same envelope handling and error mapping so the
coordinator only ever sees parsed schemas or a HomiioError subclass.
"""

import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from .cache import TTLCache
from .errors import (
    AuthenticationError,
    ErrorCode,
    HomiioError,
    NetworkError,
    NotFoundError,
    ValidationError,
    error_for_status,
)
from .schemas import (
    AddressRead,
    CreateFolderData,
    SavedPropertiesSnapshot,
    SavedProperty,
    SavedPropertyFolder,
    UpdateFolderData,
)

load_dotenv()

API_URL = os.getenv("HOMIIO_API_URL", "http://localhost:8000")

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str | None | Awaitable[str | None]]


def extract_error_message(payload: Any, status: int) -> str:
    """Best human-readable message from an error body."""
    if not payload:
        return f"HTTP {status}"
    if isinstance(payload, dict):
        for key in ("message", "detail"):
            if isinstance(payload.get(key), str) and payload[key].strip():
                return payload[key]
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    if isinstance(payload, str) and payload.strip():
        return payload
    return f"HTTP {status}"


def unwrap(payload: Any) -> Any:
    """Return ``data`` from a ``{success, data, message}`` envelope."""
    if isinstance(payload, dict) and "success" in payload:
        return payload.get("data")
    return payload


class SavedPropertiesApi:
    """Saved properties, folders and address resolution over REST."""

    base_path = "/api/profiles/me"

    def __init__(
        self,
        base_url: str = API_URL,
        token_provider: TokenProvider | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        cache: TTLCache | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self._token_provider = token_provider
        self.cache = cache if cache is not None else TTLCache()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SavedPropertiesApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token_provider is None:
            return headers
        try:
            token = self._token_provider()
            if inspect.isawaitable(token):
                token = await token
        except Exception as exc:
            logger.warning(f"Failed to get access token: {exc}")
            raise AuthenticationError("Authentication failed") from exc
        if not token:
            raise AuthenticationError("No active session")
        headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = await self._headers()
        logger.debug(f"{method} {path}")
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkError(
                str(exc) or "Network error occurred",
                context={"method": method, "path": path},
            ) from exc

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = response.text

        if response.is_error:
            raise error_for_status(
                response.status_code,
                extract_error_message(payload, response.status_code),
                context={"method": method, "path": path, "status": response.status_code},
            )
        return unwrap(payload)

    def _parse(self, model: type, data: Any) -> Any:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise HomiioError(
                "Invalid API response structure",
                code=ErrorCode.INVALID_RESPONSE,
                context={"model": model.__name__},
            ) from exc

    async def _cached_list(self, key: str, path: str, parse, force: bool) -> list:
        """GET a list through the cache.

        ``force`` skips the cached copy. A response that arrives after an
        invalidation is returned but not cached.
        """
        if not force:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        generation = self.cache.generation
        items = parse(await self._request("GET", path))
        if not self.cache.set(key, items, generation=generation):
            logger.debug(f"Not caching {key}: invalidated while in flight")
        return items

    # -------------------------------------------------------------------------
    # Saved properties
    # -------------------------------------------------------------------------

    async def get_saved_properties(self, force: bool = False) -> list[SavedProperty]:
        return await self._cached_list(
            "saved-properties",
            f"{self.base_path}/saved-properties",
            lambda data: [self._parse(SavedProperty, item) for item in data or []],
            force,
        )

    async def save_property(
        self,
        property_id: str,
        folder_id: str | None = None,
        notes: str | None = None,
    ) -> SavedProperty:
        if not property_id:
            raise ValidationError("Property ID is required", field="property_id")
        data = await self._request(
            "POST",
            f"{self.base_path}/save-property",
            json={"property_id": property_id, "folder_id": folder_id, "notes": notes},
        )
        self.cache.invalidate()
        return self._parse(SavedProperty, data)

    async def unsave_property(self, property_id: str) -> None:
        if not property_id:
            raise ValidationError("Property ID is required", field="property_id")
        try:
            await self._request("DELETE", f"{self.base_path}/saved-properties/{property_id}")
        except NotFoundError:
            # Already gone on the server, which is the state we wanted
            logger.debug(f"Property {property_id} was not saved")
        self.cache.invalidate()

    async def update_property_notes(self, property_id: str, notes: str) -> SavedProperty:
        if not property_id:
            raise ValidationError("Property ID is required", field="property_id")
        data = await self._request(
            "PUT",
            f"{self.base_path}/saved-properties/{property_id}/notes",
            json={"notes": notes},
        )
        self.cache.invalidate()
        return self._parse(SavedProperty, data)

    # -------------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------------

    async def get_folders(self, force: bool = False) -> list[SavedPropertyFolder]:
        return await self._cached_list(
            "folders",
            f"{self.base_path}/saved-property-folders",
            self._parse_folders,
            force,
        )

    def _parse_folders(self, data: Any) -> list[SavedPropertyFolder]:
        if isinstance(data, dict):
            data = data.get("folders")
        return [self._parse(SavedPropertyFolder, item) for item in data or []]

    async def create_folder(self, folder: CreateFolderData) -> SavedPropertyFolder:
        data = await self._request(
            "POST", f"{self.base_path}/saved-property-folders", json=folder.model_dump()
        )
        self.cache.invalidate()
        return self._parse(SavedPropertyFolder, data)

    async def update_folder(self, folder_id: str, changes: UpdateFolderData) -> SavedPropertyFolder:
        if not folder_id:
            raise ValidationError("Folder ID is required", field="folder_id")
        data = await self._request(
            "PUT",
            f"{self.base_path}/saved-property-folders/{folder_id}",
            json=changes.changes(),
        )
        self.cache.invalidate()
        return self._parse(SavedPropertyFolder, data)

    async def delete_folder(self, folder_id: str) -> None:
        if not folder_id:
            raise ValidationError("Folder ID is required", field="folder_id")
        await self._request("DELETE", f"{self.base_path}/saved-property-folders/{folder_id}")
        self.cache.invalidate()

    async def get_snapshot(self, force: bool = False) -> SavedPropertiesSnapshot:
        """Both lists, fetched one after the other."""
        properties = await self.get_saved_properties(force)
        folders = await self.get_folders(force)
        return SavedPropertiesSnapshot(properties=properties, folders=folders)

    # -------------------------------------------------------------------------
    # Addresses
    # -------------------------------------------------------------------------

    async def find_or_create_address(self, fields: dict[str, Any]) -> AddressRead:
        data = await self._request("POST", "/api/addresses", json=fields)
        return self._parse(AddressRead, data)
