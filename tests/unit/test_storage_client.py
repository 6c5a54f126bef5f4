"""
Unit tests for the object storage client and the legacy storage client.

HTTP is faked with httpx.MockTransport, so these tests check the exact
requests we send (URL, headers, signature presence) without a network.
"""

import asyncio
import json

import httpx
import pytest

from storage_pipeline.core.jobs.models import ConfigurationError, Credentials
from storage_pipeline.infrastructure.storage import client as client_module
from storage_pipeline.infrastructure.storage.client import (
    MockStorageClient,
    ObjectKeyGenerator,
    S3StorageClient,
    StorageError,
    create_storage_client,
    sanitize_filename,
)
from storage_pipeline.infrastructure.storage.legacy import (
    HttpLegacyStorage,
    InMemoryLegacyStorage,
    LegacyStorageError,
    create_legacy_storage,
)

CREDENTIALS = Credentials(
    endpoint="https://acct.r2.cloudflarestorage.com",
    access_key_id="AKTEST",
    secret_access_key="super-secret-value",
)

PUBLIC_BASE = "https://pub-test.r2.dev"


class FixedClock:
    """Returns the same instant every time, like a burst within one millisecond."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    def __call__(self) -> float:
        return self.seconds


def make_client(handler, clock=None) -> S3StorageClient:
    return S3StorageClient(
        CREDENTIALS,
        bucket_name="paterbrown-storage",
        public_url_base=PUBLIC_BASE,
        transport=httpx.MockTransport(handler),
        key_generator=ObjectKeyGenerator(clock=clock or FixedClock(1700000000.125)),
    )


# ---------------------------------------------------------------------------
# Key naming
# ---------------------------------------------------------------------------

class TestSanitizeFilename:
    """Keys only ever contain [A-Za-z0-9._-]."""

    def test_spaces_and_umlauts_replaced(self):
        assert sanitize_filename("Vertrag März 2024.pdf") == "Vertrag_M_rz_2024.pdf"

    def test_safe_characters_kept(self):
        assert sanitize_filename("a-b_c.D9.png") == "a-b_c.D9.png"

    def test_path_separators_replaced(self):
        assert sanitize_filename("../etc/passwd") == ".._etc_passwd"


class TestObjectKeyGenerator:
    def test_key_format(self):
        keys = ObjectKeyGenerator(clock=FixedClock(1700000000.125))
        assert keys.build("documents", "Vertrag März 2024.pdf") == (
            "documents/1700000000125-Vertrag_M_rz_2024.pdf"
        )

    def test_same_millisecond_never_collides(self):
        """Two uploads in one batch get distinct stamps even when the clock stands still."""
        keys = ObjectKeyGenerator(clock=FixedClock(1700000000.0))
        first = keys.build("picks", "a.jpg")
        second = keys.build("picks", "a.jpg")
        assert first == "picks/1700000000000-a.jpg"
        assert second == "picks/1700000000001-a.jpg"

    def test_folder_slashes_trimmed(self):
        keys = ObjectKeyGenerator(clock=FixedClock(1.0))
        assert keys.build("/picks/thumbnails/", "a.webp") == "picks/thumbnails/1000-a.webp"


# ---------------------------------------------------------------------------
# S3StorageClient
# ---------------------------------------------------------------------------

class TestPutObject:
    """Tests for signed uploads."""

    def test_put_sends_signed_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        async def scenario():
            client = make_client(handler)
            try:
                return await client.put_object("documents/1-a.pdf", b"%PDF", "application/pdf")
            finally:
                await client.aclose()

        uploaded = asyncio.run(scenario())

        request = seen[0]
        assert request.method == "PUT"
        assert str(request.url) == (
            "https://acct.r2.cloudflarestorage.com/paterbrown-storage/documents/1-a.pdf"
        )
        assert request.headers["content-type"] == "application/pdf"
        assert request.headers["content-length"] == "4"
        assert request.headers["authorization"].startswith(
            "AWS4-HMAC-SHA256 Credential=AKTEST/"
        )
        assert "/auto/s3/aws4_request" in request.headers["authorization"]
        assert "x-amz-date" in request.headers
        assert "x-amz-content-sha256" in request.headers
        assert request.content == b"%PDF"

        assert uploaded.key == "documents/1-a.pdf"
        assert uploaded.public_url == "https://pub-test.r2.dev/documents/1-a.pdf"
        assert uploaded.size == 4

    def test_non_2xx_raises_with_status_and_body(self):
        def handler(request):
            return httpx.Response(403, text="<Error>SignatureDoesNotMatch</Error>")

        async def scenario():
            client = make_client(handler)
            try:
                await client.put_object("documents/1-a.pdf", b"x", "text/plain")
            finally:
                await client.aclose()

        with pytest.raises(StorageError) as excinfo:
            asyncio.run(scenario())

        assert excinfo.value.status_code == 403
        assert "SignatureDoesNotMatch" in excinfo.value.body
        assert "403" in str(excinfo.value)

    def test_timeout_is_a_storage_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async def scenario():
            client = make_client(handler)
            try:
                await client.put_object("documents/1-a.pdf", b"x", "text/plain")
            finally:
                await client.aclose()

        with pytest.raises(StorageError, match="timed out"):
            asyncio.run(scenario())

    def test_upload_file_generates_key(self):
        def handler(request):
            return httpx.Response(200)

        async def scenario():
            client = make_client(handler, clock=FixedClock(1700000000.5))
            try:
                return await client.upload_file("picks", "Mein Foto.JPG", b"jpeg", "image/jpeg")
            finally:
                await client.aclose()

        uploaded = asyncio.run(scenario())
        assert uploaded.key == "picks/1700000000500-Mein_Foto.JPG"
        assert uploaded.public_url == f"{PUBLIC_BASE}/picks/1700000000500-Mein_Foto.JPG"

    def test_clients_built_per_request_share_one_key_sequence(self, monkeypatch):
        """Two requests uploading the same name in one millisecond get distinct keys."""
        monkeypatch.setattr(
            client_module,
            "shared_key_generator",
            ObjectKeyGenerator(clock=FixedClock(1700000000.0)),
        )

        def handler(request):
            return httpx.Response(200)

        async def upload_once():
            client = S3StorageClient(
                CREDENTIALS,
                bucket_name="paterbrown-storage",
                public_url_base=PUBLIC_BASE,
                transport=httpx.MockTransport(handler),
            )
            try:
                return await client.upload_file("documents", "a.pdf", b"x", "application/pdf")
            finally:
                await client.aclose()

        first = asyncio.run(upload_once())
        second = asyncio.run(upload_once())

        assert first.key == "documents/1700000000000-a.pdf"
        assert second.key == "documents/1700000000001-a.pdf"

    def test_secret_not_sent(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        async def scenario():
            client = make_client(handler)
            try:
                await client.put_object("k", b"x", "text/plain")
            finally:
                await client.aclose()

        asyncio.run(scenario())
        assert all("super-secret-value" not in value for value in seen[0].headers.values())

    def test_incomplete_credentials_refused(self):
        with pytest.raises(ConfigurationError, match="secret_access_key"):
            S3StorageClient(
                Credentials(endpoint="https://x", access_key_id="AK", secret_access_key=""),
                bucket_name="b",
                public_url_base=PUBLIC_BASE,
            )


class TestGetAndFetch:
    def test_get_object_signed(self):
        def handler(request):
            assert "authorization" in request.headers
            return httpx.Response(200, content=b"bytes")

        async def scenario():
            client = make_client(handler)
            try:
                return await client.get_object("picks/1-a.jpg")
            finally:
                await client.aclose()

        assert asyncio.run(scenario()) == b"bytes"

    def test_fetch_url_is_plain_get(self):
        def handler(request):
            assert "authorization" not in request.headers
            assert str(request.url) == f"{PUBLIC_BASE}/picks/1-a.jpg"
            return httpx.Response(200, content=b"public")

        async def scenario():
            client = make_client(handler)
            try:
                return await client.fetch_url(f"{PUBLIC_BASE}/picks/1-a.jpg")
            finally:
                await client.aclose()

        assert asyncio.run(scenario()) == b"public"

    def test_fetch_url_not_found(self):
        def handler(request):
            return httpx.Response(404, text="missing")

        async def scenario():
            client = make_client(handler)
            try:
                await client.fetch_url(f"{PUBLIC_BASE}/gone.jpg")
            finally:
                await client.aclose()

        with pytest.raises(StorageError) as excinfo:
            asyncio.run(scenario())
        assert excinfo.value.status_code == 404


class TestDeleteObjects:
    """Delete is best effort: 404 counts as done, errors never raise."""

    def test_counts_success_and_not_found(self):
        statuses = {
            "/paterbrown-storage/a": 204,
            "/paterbrown-storage/b": 404,
            "/paterbrown-storage/c": 500,
        }

        def handler(request):
            assert request.method == "DELETE"
            return httpx.Response(statuses[request.url.path])

        async def scenario():
            client = make_client(handler)
            try:
                return await client.delete_objects(["a", "b", "c"])
            finally:
                await client.aclose()

        assert asyncio.run(scenario()) == 2

    def test_transport_error_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async def scenario():
            client = make_client(handler)
            try:
                return await client.delete_objects(["a"])
            finally:
                await client.aclose()

        assert asyncio.run(scenario()) == 0


class TestPublicUrls:
    def test_round_trip(self):
        client = MockStorageClient(public_url_base=PUBLIC_BASE)
        url = client.public_url_for("picks/thumbnails/1-a.jpg")
        assert url == "https://pub-test.r2.dev/picks/thumbnails/1-a.jpg"
        assert client.key_from_public_url(url) == "picks/thumbnails/1-a.jpg"

    def test_foreign_url_has_no_key(self):
        client = MockStorageClient(public_url_base=PUBLIC_BASE)
        assert client.key_from_public_url("https://legacy.example.com/storage/a.jpg") is None
        assert client.key_from_public_url("") is None

    def test_base_with_path(self):
        client = MockStorageClient(public_url_base="https://cdn.example.com/files")
        assert client.key_from_public_url("https://cdn.example.com/files/picks/a.jpg") == "picks/a.jpg"


class TestFactory:
    def test_mock_mode(self):
        client = create_storage_client(public_url_base=PUBLIC_BASE, mock_mode=True)
        assert isinstance(client, MockStorageClient)
        assert client.public_url_base == PUBLIC_BASE

    def test_real_mode_needs_credentials(self):
        with pytest.raises(ValueError, match="credentials"):
            create_storage_client(bucket_name="b", public_url_base=PUBLIC_BASE)


# ---------------------------------------------------------------------------
# Legacy storage
# ---------------------------------------------------------------------------

class TestHttpLegacyStorage:
    """Tests for the legacy backend's HTTP object API."""

    def _storage(self, handler) -> HttpLegacyStorage:
        return HttpLegacyStorage(
            "https://legacy.example.com/",
            "service-key",
            transport=httpx.MockTransport(handler),
        )

    def test_download(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/storage/v1/object/internal-documents/2023/Vertrag 1.pdf"
            assert request.headers["authorization"] == "Bearer service-key"
            assert request.headers["apikey"] == "service-key"
            return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf; charset=binary"})

        async def scenario():
            storage = self._storage(handler)
            try:
                return await storage.download("internal-documents", "2023/Vertrag 1.pdf")
            finally:
                await storage.aclose()

        legacy_file = asyncio.run(scenario())
        assert legacy_file.content == b"%PDF"
        assert legacy_file.content_type == "application/pdf"

    def test_download_error(self):
        def handler(request):
            return httpx.Response(400, text="Object not found")

        async def scenario():
            storage = self._storage(handler)
            try:
                await storage.download("internal-documents", "missing.pdf")
            finally:
                await storage.aclose()

        with pytest.raises(LegacyStorageError, match="HTTP 400"):
            asyncio.run(scenario())

    def test_empty_download_is_an_error(self):
        def handler(request):
            return httpx.Response(200, content=b"")

        async def scenario():
            storage = self._storage(handler)
            try:
                await storage.download("picks-images", "a.jpg")
            finally:
                await storage.aclose()

        with pytest.raises(LegacyStorageError, match="no data"):
            asyncio.run(scenario())

    def test_remove_sends_prefixes(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async def scenario():
            storage = self._storage(handler)
            try:
                await storage.remove("picks-images", ["a.jpg"])
            finally:
                await storage.aclose()

        asyncio.run(scenario())
        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/storage/v1/object/picks-images"
        assert json.loads(seen[0].content) == {"prefixes": ["a.jpg"]}

    def test_requires_configuration(self):
        with pytest.raises(ValueError):
            HttpLegacyStorage("", "")


class TestInMemoryLegacyStorage:
    def test_download_and_remove(self):
        storage = InMemoryLegacyStorage()
        storage.add("picks-images", "a.jpg", b"jpeg", "image/jpeg")

        async def scenario():
            legacy_file = await storage.download("picks-images", "a.jpg")
            await storage.remove("picks-images", ["a.jpg"])
            return legacy_file

        legacy_file = asyncio.run(scenario())
        assert legacy_file.content == b"jpeg"
        assert storage.removed == [("picks-images", "a.jpg")]
        assert ("picks-images", "a.jpg") not in storage.files

    def test_factory_mock_mode(self):
        assert isinstance(create_legacy_storage(mock_mode=True), InMemoryLegacyStorage)
