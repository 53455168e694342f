"""Tests for the per-tenant credential store."""

import json
import os
import stat

import pytest

from wassist.credentials import CREDS_FILE, CredentialStore


class TestLoad:
    @pytest.mark.asyncio
    async def test_never_paired_is_empty(self, credentials):
        assert await credentials.load("t1") == {}
        assert not credentials.has_credentials("t1")

    @pytest.mark.asyncio
    async def test_corrupt_file_is_empty(self, credentials):
        directory = credentials.tenant_dir("t1")
        os.makedirs(directory)
        with open(os.path.join(directory, CREDS_FILE), "w") as f:
            f.write("{not json")
        assert await credentials.load("t1") == {}


class TestPersist:
    @pytest.mark.asyncio
    async def test_updates_merge(self, credentials):
        await credentials.persist_on_update("t1", {"me": {"id": "1@s.whatsapp.net"}, "registered": False})
        state = await credentials.persist_on_update("t1", {"registered": True})
        assert state == {"me": {"id": "1@s.whatsapp.net"}, "registered": True}
        assert await credentials.load("t1") == state

    @pytest.mark.asyncio
    async def test_bytes_survive_restart(self, credentials, tmp_path):
        key = bytes(range(32))
        await credentials.persist_on_update("t1", {"noiseKey": {"private": key}})

        reopened = CredentialStore(str(tmp_path / "auth"))
        assert (await reopened.load("t1"))["noiseKey"]["private"] == key

    @pytest.mark.asyncio
    async def test_file_is_private(self, credentials):
        await credentials.persist_on_update("t1", {"a": 1})
        path = os.path.join(credentials.tenant_dir("t1"), CREDS_FILE)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        with open(path) as f:
            assert json.load(f) == {"a": 1}

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, credentials):
        await credentials.persist_on_update("t1", {"a": 1})
        await credentials.persist_on_update("t2", {"b": 2})
        assert await credentials.load("t1") == {"a": 1}
        assert await credentials.load("t2") == {"b": 2}


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_forgets_pairing(self, credentials):
        await credentials.persist_on_update("t1", {"a": 1})
        await credentials.clear("t1")
        assert not credentials.has_credentials("t1")
        assert await credentials.load("t1") == {}

    @pytest.mark.asyncio
    async def test_clear_unknown_tenant_is_noop(self, credentials):
        await credentials.clear("never")


class TestTenantIds:
    @pytest.mark.parametrize("bad", ["", ".", "..", "a/b"])
    def test_rejects_path_like_ids(self, credentials, bad):
        with pytest.raises(ValueError):
            credentials.tenant_dir(bad)
