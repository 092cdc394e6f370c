# tests/test_upload.py — Shared folder uploads
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers

BASE = "/api/v1/upload"


@pytest.mark.asyncio
class TestUpload:
    async def test_upload_and_delete(self, client: AsyncClient, test_user, storage):
        headers = get_auth_headers(test_user)
        res = await client.post(
            f"{BASE}/knowledge",
            files={"file": ("How To.pdf", b"%PDF-1.4 guide", "application/pdf")},
            headers=headers,
        )
        assert res.status_code == 201
        data = res.json()
        assert data["file_name"].endswith("-How_To.pdf")
        assert data["file_path"] == f"/uploads/knowledge/{data['file_name']}"
        assert data["file_type"] == "application/pdf"
        assert data["file_size"] == len(b"%PDF-1.4 guide")
        stored = storage.root / "knowledge" / data["file_name"]
        assert stored.read_bytes() == b"%PDF-1.4 guide"

        res = await client.delete(f"{BASE}/knowledge/{data['file_name']}", headers=headers)
        assert res.status_code == 200
        assert res.json()["status"] == "deleted"
        assert not stored.exists()

    async def test_requires_login(self, client: AsyncClient):
        res = await client.post(
            f"{BASE}/tickets",
            files={"file": ("a.txt", b"hi", "text/plain")},
        )
        assert res.status_code in (401, 403)

    async def test_unknown_folder(self, client: AsyncClient, test_user):
        res = await client.post(
            f"{BASE}/secrets",
            files={"file": ("a.txt", b"hi", "text/plain")},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400
        assert res.json()["error"] == "validation_error"
        assert "Invalid folder" in res.json()["detail"]

    async def test_unsupported_type(self, client: AsyncClient, test_user):
        res = await client.post(
            f"{BASE}/tickets",
            files={"file": ("run.exe", b"MZ", "application/octet-stream")},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400
        assert res.json()["detail"] == "File type not supported"

    async def test_too_large(self, client: AsyncClient, test_user, storage):
        res = await client.post(
            f"{BASE}/tickets",
            files={"file": ("big.txt", b"x" * 2_000_000, "text/plain")},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400
        assert res.json()["error"] == "upload_error"
        assert not (storage.root / "tickets").exists()

    async def test_storage_failure(self, client: AsyncClient, test_user, broken_storage):
        res = await client.post(
            f"{BASE}/solutions",
            files={"file": ("fix.txt", b"steps", "text/plain")},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 500
        assert res.json()["error"] == "upload_error"


@pytest.mark.asyncio
class TestDeleteUpload:
    async def test_missing_file(self, client: AsyncClient, test_user):
        res = await client.delete(f"{BASE}/tickets/123-gone.txt", headers=get_auth_headers(test_user))
        assert res.status_code == 404
        assert res.json()["detail"] == "File not found"

    async def test_unknown_folder(self, client: AsyncClient, test_user):
        res = await client.delete(f"{BASE}/secrets/123-a.txt", headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_hidden_name_rejected(self, client: AsyncClient, test_user):
        res = await client.delete(f"{BASE}/tickets/.env", headers=get_auth_headers(test_user))
        assert res.status_code == 400
        assert res.json()["error"] == "validation_error"

    async def test_storage_failure(self, client: AsyncClient, test_user, broken_storage):
        res = await client.delete(f"{BASE}/tickets/123-a.txt", headers=get_auth_headers(test_user))
        assert res.status_code == 500
