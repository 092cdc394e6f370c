# tests/test_settings.py — Site branding
import pytest
from httpx import AsyncClient
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import Setting, SETTINGS_ID
from routers.settings import _create_singleton, _get_or_create
from tests.conftest import get_auth_headers

BASE = "/api/v1/settings"


@pytest.mark.asyncio
class TestSettings:
    async def test_defaults_are_public(self, client: AsyncClient):
        res = await client.get(BASE)
        assert res.status_code == 200
        data = res.json()
        assert data["site_name"] == "ITSM Solution"
        assert data["primary_color"] == "#1976d2"
        assert data["logo"] == "/uploads/branding/default-logo.png"

    async def test_single_settings_row(self, client: AsyncClient):
        first = (await client.get(BASE)).json()
        second = (await client.get(BASE)).json()
        assert first["id"] == second["id"]

    async def test_regular_user_cannot_update(self, client: AsyncClient, test_user):
        res = await client.put(BASE, json={"site_name": "Mine"}, headers=get_auth_headers(test_user))
        assert res.status_code == 403

    async def test_admin_updates(self, client: AsyncClient, admin_user):
        res = await client.put(BASE, json={
            "site_name": "Ops Desk",
            "primary_color": "#112233",
        }, headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        data = res.json()
        assert data["site_name"] == "Ops Desk"
        assert data["primary_color"] == "#112233"
        assert data["company_name"] == "Your Company"
        assert data["updated_by"] == admin_user.id

        res = await client.get(BASE)
        assert res.json()["site_name"] == "Ops Desk"

    async def test_bad_color_rejected(self, client: AsyncClient, admin_user):
        res = await client.put(BASE, json={"primary_color": "blue"}, headers=get_auth_headers(admin_user))
        assert res.status_code == 422


@pytest.mark.asyncio
class TestBrandingAssets:
    async def test_logo_upload(self, client: AsyncClient, admin_user, storage):
        res = await client.put(
            f"{BASE}/logo",
            files={"file": ("logo.png", b"\x89PNG fake", "image/png")},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        logo = res.json()["logo"]
        assert logo.startswith("/uploads/branding/logo_")
        assert logo.endswith(".png")
        stored = storage.root / logo[len("/uploads/"):]
        assert stored.read_bytes() == b"\x89PNG fake"

    async def test_non_image_rejected(self, client: AsyncClient, admin_user):
        res = await client.put(
            f"{BASE}/banner",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 400

    async def test_unknown_asset(self, client: AsyncClient, admin_user):
        res = await client.put(
            f"{BASE}/wallpaper",
            files={"file": ("w.png", b"img", "image/png")},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 422

    async def test_storage_failure(self, client: AsyncClient, admin_user, broken_storage):
        res = await client.put(
            f"{BASE}/favicon",
            files={"file": ("f.ico", b"ico", "image/x-icon")},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 500

    async def test_oversized_image_rejected(self, client: AsyncClient, admin_user, storage):
        res = await client.put(
            f"{BASE}/banner",
            files={"file": ("huge.png", b"x" * 3_000_000, "image/png")},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 400
        assert "less than 1MB" in res.json()["detail"]
        assert not storage.root.exists() or not any(p.is_file() for p in storage.root.rglob("*"))


@pytest.mark.asyncio
class TestSettingsRow:
    async def test_concurrent_create_reuses_existing_row(self, db_engine):
        factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
        async with factory() as first:
            settings = await _get_or_create(first)
            settings.site_name = "First Writer"
            await first.commit()

        # A second request that missed the row on its read still ends up with it
        async with factory() as second:
            settings = await _create_singleton(second)
            assert settings.id == SETTINGS_ID
            assert settings.site_name == "First Writer"
            count = (await second.execute(select(func.count(Setting.id)))).scalar()
            assert count == 1

    async def test_row_uses_fixed_id(self, client: AsyncClient):
        res = await client.get(BASE)
        assert res.json()["id"] == SETTINGS_ID
