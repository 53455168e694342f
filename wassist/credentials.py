"""Credential Store — per-tenant pairing state on disk.

Each tenant gets its own directory under auth_dir holding creds.json. The
transport reports changes through creds.update events; the supervisor
merges and persists them here so a restart does not require re-pairing.
"""

import asyncio
import json
import logging
import os
import shutil
from typing import Any

from .transport.bridge import decode_binary, encode_binary

logger = logging.getLogger("wassist.credentials")

CREDS_FILE = "creds.json"


class CredentialStore:
    """Filesystem-backed credentials, one directory per tenant."""

    def __init__(self, auth_dir: str):
        self.auth_dir = os.path.expanduser(auth_dir)

    def tenant_dir(self, tenant_id: str) -> str:
        if not tenant_id or os.sep in tenant_id or tenant_id in (".", ".."):
            raise ValueError(f"Invalid tenant id: {tenant_id!r}")
        return os.path.join(self.auth_dir, tenant_id)

    def _path(self, tenant_id: str) -> str:
        return os.path.join(self.tenant_dir(tenant_id), CREDS_FILE)

    def has_credentials(self, tenant_id: str) -> bool:
        return os.path.isfile(self._path(tenant_id))

    async def load(self, tenant_id: str) -> dict[str, Any]:
        """Stored state, or an empty dict for a tenant that never paired."""
        return await asyncio.to_thread(self._read, tenant_id)

    async def persist_on_update(self, tenant_id: str, state: dict[str, Any]) -> dict[str, Any]:
        """Merge a creds.update delta into stored state and write it atomically."""
        return await asyncio.to_thread(self._merge_and_write, tenant_id, state)

    async def clear(self, tenant_id: str) -> None:
        """Forget the pairing. The next connect starts a fresh QR/code flow."""
        await asyncio.to_thread(shutil.rmtree, self.tenant_dir(tenant_id), True)
        logger.info(f"[{tenant_id}] Credentials cleared")

    # ── sync helpers (run in a thread) ────────────────────────

    def _read(self, tenant_id: str) -> dict[str, Any]:
        path = self._path(tenant_id)
        try:
            with open(path, encoding="utf-8") as f:
                data = decode_binary(json.load(f))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.error(f"[{tenant_id}] Corrupt credentials file {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _merge_and_write(self, tenant_id: str, delta: dict[str, Any]) -> dict[str, Any]:
        state = self._read(tenant_id)
        state.update(delta)

        directory = self.tenant_dir(tenant_id)
        os.makedirs(directory, mode=0o700, exist_ok=True)
        path = self._path(tenant_id)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(encode_binary(state), f)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
        return state
