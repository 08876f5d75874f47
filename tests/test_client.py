"""Unit tests for the REST client: envelopes, error mapping and caching."""

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from homiio.cache import TTLCache
from homiio.client import SavedPropertiesApi, extract_error_message, unwrap
from homiio.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    HomiioError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
    ValidationError,
)
from homiio.schemas import CreateFolderData, UpdateFolderData

pytestmark = pytest.mark.unit

BASE_URL = "http://api.test"


def _saved(property_id: str = "p1", folder_id: str | None = "f-1") -> dict:
    return {
        "id": f"sp-{property_id}",
        "property_id": property_id,
        "profile_id": "profile-1",
        "folder_id": folder_id,
        "notes": None,
    }


def _folder(folder_id: str = "f-1", name: str = "Shortlist", count: int = 0) -> dict:
    return {"id": folder_id, "name": name, "property_count": count}


def _envelope(data, message: str = "") -> dict:
    return {"success": True, "data": data, "message": message}


def _api(
    handler: Callable[[httpx.Request], httpx.Response],
    token: str | None = "tok",
    **kwargs,
) -> SavedPropertiesApi:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return SavedPropertiesApi(token_provider=lambda: token, client=client, **kwargs)


class TestHelpers:
    def test_unwrap_envelope(self):
        assert unwrap(_envelope([1, 2])) == [1, 2]
        assert unwrap([1, 2]) == [1, 2]

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"message": "Bad folder"}, "Bad folder"),
            ({"detail": "Nope"}, "Nope"),
            ({"success": False, "error": {"code": "X", "message": "Nested"}}, "Nested"),
            ({"error": "Flat"}, "Flat"),
            ("plain text", "plain text"),
            (None, "HTTP 502"),
            ({}, "HTTP 502"),
        ],
    )
    def test_extract_error_message(self, payload, expected):
        assert extract_error_message(payload, 502) == expected


class TestRequests:
    async def test_get_saved_properties_sends_bearer_and_parses(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_envelope([_saved("p1"), _saved("p2", None)]))

        async with _api(handler) as api:
            properties = await api.get_saved_properties()

        assert [p.property_id for p in properties] == ["p1", "p2"]
        assert properties[1].folder_id is None
        assert requests[0].url.path == "/api/profiles/me/saved-properties"
        assert requests[0].headers["Authorization"] == "Bearer tok"

    async def test_save_property_posts_payload(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_envelope(_saved("p1", "f-2")))

        async with _api(handler) as api:
            saved = await api.save_property("p1", "f-2", "note")

        assert saved.folder_id == "f-2"
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/profiles/me/save-property"
        assert json.loads(requests[0].content) == {
            "property_id": "p1",
            "folder_id": "f-2",
            "notes": "note",
        }

    async def test_folders_accept_wrapped_or_bare_list(self):
        bodies = [_envelope({"folders": [_folder()]}), _envelope([_folder("f-2")])]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=bodies.pop(0))

        async with _api(handler, cache=TTLCache(ttl=0)) as api:
            assert [f.id for f in await api.get_folders()] == ["f-1"]
            assert [f.id for f in await api.get_folders()] == ["f-2"]

    async def test_update_folder_sends_only_set_fields(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_envelope(_folder(name="Renamed")))

        async with _api(handler) as api:
            await api.update_folder("f-1", UpdateFolderData(name="Renamed"))

        assert requests[0].method == "PUT"
        assert json.loads(requests[0].content) == {"name": "Renamed"}

    async def test_invalid_payload_is_invalid_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_envelope({"unexpected": True}))

        async with _api(handler) as api:
            with pytest.raises(HomiioError) as excinfo:
                await api.save_property("p1")
        assert excinfo.value.code == ErrorCode.INVALID_RESPONSE


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("status", "error_type"),
        [
            (400, ValidationError),
            (401, AuthenticationError),
            (403, PermissionDeniedError),
            (404, NotFoundError),
            (409, ConflictError),
            (500, ServerError),
            (503, ServerError),
        ],
    )
    async def test_status_codes(self, status, error_type):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                status, json={"success": False, "error": {"code": "X", "message": "nope"}}
            )

        async with _api(handler) as api:
            with pytest.raises(error_type) as excinfo:
                await api.get_saved_properties()
        assert excinfo.value.message == "nope"
        assert excinfo.value.context["status"] == status

    async def test_transport_error_is_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _api(handler) as api:
            with pytest.raises(NetworkError) as excinfo:
                await api.get_folders()
        assert excinfo.value.retryable

    async def test_unsave_treats_404_as_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"success": False, "error": {"message": "gone"}})

        async with _api(handler) as api:
            assert await api.unsave_property("p1") is None

    async def test_unsave_other_errors_propagate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"message": "down"})

        async with _api(handler) as api:
            with pytest.raises(ServerError):
                await api.unsave_property("p1")


class TestAuthentication:
    async def test_missing_token_fails_before_request(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_envelope([]))

        async with _api(handler, token=None) as api:
            with pytest.raises(AuthenticationError):
                await api.get_saved_properties()
        assert requests == []

    async def test_failing_token_provider_is_authentication_error(self):
        def provider():
            raise RuntimeError("keychain locked")

        client = httpx.AsyncClient(
            base_url=BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )
        async with SavedPropertiesApi(token_provider=provider, client=client) as api:
            with pytest.raises(AuthenticationError):
                await api.get_folders()

    async def test_async_token_provider(self):
        requests: list[httpx.Request] = []

        async def provider():
            return "async-tok"

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_envelope([]))

        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        async with SavedPropertiesApi(token_provider=provider, client=client) as api:
            await api.get_saved_properties()
        assert requests[0].headers["Authorization"] == "Bearer async-tok"


class TestCaching:
    async def test_reads_are_cached(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_envelope([_saved()]))

        async with _api(handler) as api:
            await api.get_saved_properties()
            await api.get_saved_properties()
        assert len(requests) == 1

    async def test_mutations_invalidate_cache(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("saved-property-folders") and request.method == "POST":
                return httpx.Response(201, json=_envelope(_folder("f-9", "New")))
            return httpx.Response(200, json=_envelope({"folders": [_folder()]}))

        async with _api(handler) as api:
            await api.get_folders()
            await api.create_folder(CreateFolderData(name="New"))
            await api.get_folders()

        assert [r.method for r in requests] == ["GET", "POST", "GET"]
        assert len(api.cache) == 1

    async def test_snapshot_uses_both_endpoints(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("saved-properties"):
                return httpx.Response(200, json=_envelope([_saved()]))
            return httpx.Response(200, json=_envelope({"folders": [_folder(count=1)]}))

        async with _api(handler) as api:
            snapshot = await api.get_snapshot()
        assert len(snapshot.properties) == 1
        assert snapshot.folders[0].property_count == 1

    async def test_force_skips_cached_copy(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("saved-properties"):
                return httpx.Response(200, json=_envelope([_saved()]))
            return httpx.Response(200, json=_envelope([_folder()]))

        async with _api(handler) as api:
            await api.get_saved_properties()
            await api.get_snapshot(force=True)
        assert [r.url.path for r in requests] == [
            "/api/profiles/me/saved-properties",
            "/api/profiles/me/saved-properties",
            "/api/profiles/me/saved-property-folders",
        ]

    async def test_read_overtaken_by_mutation_is_not_cached(self):
        server = ["p1"]
        held = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                server.append(json.loads(request.content)["property_id"])
                return httpx.Response(200, json=_envelope(_saved(server[-1])))
            body = _envelope([_saved(p) for p in server])
            if not held.is_set():
                held.set()
                await release.wait()
            return httpx.Response(200, json=body)

        async with _api(handler) as api:
            slow_read = asyncio.create_task(api.get_saved_properties())
            await held.wait()
            await api.save_property("p2")
            release.set()

            assert [p.property_id for p in await slow_read] == ["p1"]
            assert "saved-properties" not in api.cache
            fresh = await api.get_saved_properties()

        assert [p.property_id for p in fresh] == ["p1", "p2"]


class TestAddresses:
    def _address(self) -> dict:
        return {
            "id": "6f1c2a52-8d3e-4b9a-9a57-0c1d2e3f4a5b",
            "street": "Calle Mayor",
            "number": "12",
            "city": "Madrid",
            "postal_code": "28013",
            "country": "España",
            "country_code": "ES",
            "lat": 40.4155,
            "lng": -3.7079,
            "normalized_key": "abc123",
            "full_address": "Calle Mayor 12, 28013 Madrid, España",
            "location": "Madrid, España",
        }

    async def test_find_or_create_posts_fields_and_unwraps(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json=_envelope(self._address(), "Address created"))

        fields = {"street": "Calle Mayor", "zip": "28013", "city": "Madrid"}
        async with _api(handler) as api:
            address = await api.find_or_create_address(fields)

        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/addresses"
        assert json.loads(requests[0].content) == fields
        assert str(address.id) == "6f1c2a52-8d3e-4b9a-9a57-0c1d2e3f4a5b"
        assert address.country_code == "ES"
        assert address.postal_code == "28013"

    async def test_find_or_create_validation_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={
                    "success": False,
                    "error": {"code": "VALIDATION_ERROR", "message": "coordinates are required"},
                },
            )

        async with _api(handler) as api:
            with pytest.raises(ValidationError) as excinfo:
                await api.find_or_create_address({"street": "Calle Mayor"})
        assert excinfo.value.message == "coordinates are required"
