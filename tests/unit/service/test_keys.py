"""Tests for storage key generation, parsing and legacy migration."""

import hashlib

import pytest

from image_pipeline.service.keys import (
    ARCHIVE_DIR,
    content_type_for_extension,
    extension_for_content_type,
    find_legacy_logo_key,
    get_file_extension,
    image_storage_key,
    infer_content_type,
    logo_storage_key,
    migrate_legacy_logo,
    parse_storage_key,
)
from image_pipeline.storage.memory import MemoryStore
from image_pipeline.types.results import LogoSource


def hash8(domain: str) -> str:
    return hashlib.sha256(domain.encode()).hexdigest()[:8]


class TestLogoStorageKey:
    def test_layout(self):
        assert logo_storage_key("example.com", LogoSource.GOOGLE) == (
            f"images/logos/example_com_google_{hash8('example.com')}.png"
        )

    def test_duckduckgo_and_complex_tld(self):
        assert logo_storage_key("example.co.uk", "duckduckgo", "svg") == (
            f"images/logos/example_co_uk_ddg_{hash8('example.co.uk')}.svg"
        )

    def test_inverted(self):
        key = logo_storage_key("example.com", "direct", inverted=True)
        assert key.startswith("images/logos/inverted/example_com_direct_")

    def test_idempotent_and_case_insensitive(self):
        assert logo_storage_key("Example.COM", "google") == logo_storage_key("example.com", "google")

    def test_subdomain_dots_become_underscores(self):
        key = logo_storage_key("blog.example.com", "direct", ".PNG")
        assert key == f"images/logos/blog_example_com_direct_{hash8('blog.example.com')}.png"

    def test_requires_tld(self):
        with pytest.raises(ValueError, match="Invalid domain"):
            logo_storage_key("localhost", "google")


class TestImageStorageKey:
    def test_hash_and_extension(self):
        url = "https://example.com/a/b.jpg"
        expected_hash = hashlib.sha256(url.encode()).hexdigest()[:16]
        assert image_storage_key(url) == f"images/{expected_hash}.jpg"

    def test_type_and_inverted(self):
        key = image_storage_key("https://example.com/hero", image_type="banners", inverted=True)
        assert key.startswith("images/banners/inverted/")
        assert key.endswith(".png")

    def test_explicit_extension(self):
        assert image_storage_key("https://example.com/x", extension="webp").endswith(".webp")


class TestContentTypes:
    @pytest.mark.parametrize(
        "url, content_type, expected",
        [
            ("https://x.com/a.webp?v=1", None, "webp"),
            ("https://x.com/logo.php", "image/jpeg", "jpg"),
            ("https://x.com/logo", "image/svg+xml; charset=utf-8", "svg"),
            (None, "text/html", "png"),
            (None, None, "png"),
        ],
    )
    def test_get_file_extension(self, url, content_type, expected):
        assert get_file_extension(url, content_type) == expected

    def test_extension_for_content_type(self):
        assert extension_for_content_type("image/vnd.microsoft.icon") == "ico"
        assert extension_for_content_type(None) == "png"

    def test_content_type_for_extension(self):
        assert content_type_for_extension(".JPG") == "image/jpeg"
        assert content_type_for_extension("unknown") == "image/png"

    def test_infer_content_type(self):
        assert infer_content_type("https://x.com/favicon.ico") == "image/x-icon"
        assert infer_content_type("https://x.com/logo") == "image/png"


class TestParseStorageKey:
    def test_hashed_logo(self):
        parsed = parse_storage_key(logo_storage_key("example.co.uk", LogoSource.DUCKDUCKGO))
        assert parsed.kind == "logo"
        assert parsed.domain == "example.co.uk"
        assert parsed.source == "duckduckgo"
        assert parsed.hash == hash8("example.co.uk")
        assert parsed.extension == "png"
        assert not parsed.inverted
        assert not parsed.is_legacy_logo

    def test_inverted_logo(self):
        parsed = parse_storage_key(logo_storage_key("example.com", "google", inverted=True))
        assert parsed.inverted
        assert parsed.domain == "example.com"

    def test_legacy_logo_with_source(self):
        parsed = parse_storage_key("images/logos/example_com_google.png")
        assert parsed.is_legacy_logo
        assert parsed.domain == "example.com"
        assert parsed.source == "google"

    def test_legacy_logo_without_source(self):
        parsed = parse_storage_key("images/logos/example_com.jpg")
        assert parsed.is_legacy_logo
        assert parsed.source == "unknown"
        assert parsed.extension == "jpg"

    def test_plain_image(self):
        parsed = parse_storage_key("images/banners/0123456789abcdef.jpg")
        assert parsed.kind == "image"
        assert parsed.hash == "0123456789abcdef"

    def test_unknown(self):
        assert parse_storage_key("json/failures.json").kind == "unknown"


class TestLegacyMigration:
    @pytest.fixture
    def store(self):
        return MemoryStore()

    @pytest.mark.asyncio
    async def test_find_skips_archive_and_hashed_keys(self, store):
        await store.write(f"{ARCHIVE_DIR}/example_com_google.png", b"old", "image/png")
        await store.write(logo_storage_key("example.com", "google"), b"new", "image/png")
        assert await find_legacy_logo_key("example.com", store) is None

        await store.write("images/logos/example_com_google.png", b"legacy", "image/png")
        assert await find_legacy_logo_key("Example.com", store) == "images/logos/example_com_google.png"

    @pytest.mark.asyncio
    async def test_find_lists_only_the_domain_prefix(self, store):
        for i in range(50):
            await store.write(f"images/logos/other{i}_com_google.png", b"x", "image/png")
        await store.write("images/logos/example_co_uk.png", b"legacy", "image/png")
        prefixes = []
        list_keys = store.list_keys

        async def recording_list_keys(prefix=""):
            prefixes.append(prefix)
            return await list_keys(prefix)

        store.list_keys = recording_list_keys

        assert await find_legacy_logo_key("example.co.uk", store) == "images/logos/example_co_uk.png"
        assert prefixes == ["images/logos/example_co_uk"]

    @pytest.mark.asyncio
    async def test_find_ignores_longer_names_sharing_the_prefix(self, store):
        await store.write("images/logos/example_company_google.png", b"other", "image/png")
        assert await find_legacy_logo_key("example.com", store) is None
        assert await find_legacy_logo_key("not-a-domain", store) is None

    @pytest.mark.asyncio
    async def test_migrate(self, store):
        legacy_key = "images/logos/example_com_direct.jpg"
        await store.write(legacy_key, b"legacy-bytes", "image/jpeg")

        new_key = await migrate_legacy_logo("example.com", store)

        assert new_key == logo_storage_key("example.com", "direct", "jpg")
        assert await store.read(new_key) == b"legacy-bytes"
        assert await store.get_content_type(new_key) == "image/jpeg"
        assert await store.read(f"{ARCHIVE_DIR}/example_com_direct.jpg") == b"legacy-bytes"
        assert not await store.exists(legacy_key)
        assert await find_legacy_logo_key("example.com", store) is None

    @pytest.mark.asyncio
    async def test_migrate_nothing(self, store):
        assert await migrate_legacy_logo("example.com", store) is None

    @pytest.mark.asyncio
    async def test_migrate_failure_keeps_legacy(self):
        store = MemoryStore()
        legacy_key = "images/logos/example_com_google.png"
        await store.write(legacy_key, b"legacy", "image/png")
        store.memory_guard = lambda nbytes: False

        assert await migrate_legacy_logo("example.com", store) is None
        assert await store.exists(legacy_key)
