"""SessionStore -- gateway credentials on disk.

Layout of the session directory (created 0700):
  creds.json          primary auth blob
  <type>-<id>.json    per-device key shards

Binary values are written as {"type": "Buffer", "data": "<base64>"} so the
files stay plain JSON and reload to identical bytes.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import os
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from wabot.log import logger

CREDS_FILE = "creds.json"
REQUIRED_CREDS_FIELDS = ("noiseKey", "signedIdentityKey", "signedPreKey")
_SEED_FETCH_TIMEOUT = 45.0


# ---- Buffer JSON ----


def buffer_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def buffer_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == "Buffer" and "data" in obj and len(obj) == 2:
        data = obj["data"]
        if isinstance(data, str):
            return base64.b64decode(data)
        if isinstance(data, list):
            return bytes(data)
    return obj


def dumps(value: Any) -> str:
    return json.dumps(value, default=buffer_default, indent=2)


def loads(text: str) -> Any:
    return json.loads(text, object_hook=buffer_hook)


def _fix_filename(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


# ---- Auth state ----


class KeyStore:
    """Signal key shards, one file per (type, id)."""

    def __init__(self, directory: Path, on_error: Callable[[Exception], None]) -> None:
        self._dir = directory
        self._on_error = on_error

    def _path(self, key_type: str, key_id: str) -> Path:
        return self._dir / _fix_filename(f"{key_type}-{key_id}.json")

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        def _read() -> dict[str, Any]:
            out: dict[str, Any] = {}
            for key_id in ids:
                path = self._path(key_type, key_id)
                if path.exists():
                    out[key_id] = loads(path.read_text(encoding="utf-8"))
            return out

        try:
            return await asyncio.to_thread(_read)
        except (OSError, ValueError) as e:
            self._on_error(e)
            return {}

    async def set(self, data: dict[str, dict[str, Any]]) -> None:
        """Write shards; a None value deletes the shard."""

        def _write() -> None:
            for key_type, entries in data.items():
                for key_id, value in entries.items():
                    path = self._path(key_type, key_id)
                    if value is None:
                        path.unlink(missing_ok=True)
                    else:
                        _atomic_write(path, dumps(value))

        try:
            await asyncio.to_thread(_write)
        except (OSError, TypeError) as e:
            self._on_error(e)


@dataclass
class AuthState:
    creds: dict[str, Any] = field(default_factory=dict)
    keys: KeyStore | None = None


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(str(tmp), str(path))


class SessionStore:
    """Persist and restore gateway credentials; bootstrap from a seed."""

    def __init__(self, session_dir: Path, seed: str = "", seed_url: str = "") -> None:
        self.session_dir = session_dir
        self.seed = seed
        self.seed_url = seed_url
        self.io_failures = 0
        self.consecutive_io_failures = 0
        self.last_io_error = ""

    @property
    def creds_path(self) -> Path:
        return self.session_dir / CREDS_FILE

    @property
    def io_healthy(self) -> bool:
        return self.consecutive_io_failures == 0

    def has_session(self) -> bool:
        return self.creds_path.exists()

    def _ensure_dir(self) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.session_dir, 0o700)

    async def initialize(self) -> bool:
        """Prepare the directory, materialize a seed if needed. Returns True if creds exist."""
        await asyncio.to_thread(self._ensure_dir)
        if self.has_session():
            logger.info("Existing local session found")
            return True
        if not self.seed:
            logger.warning("No session seed configured, pairing via QR code")
            return False
        try:
            creds = await self._resolve_seed(self.seed)
        except (ValueError, httpx.HTTPError) as e:
            logger.error(f"Session seed could not be used, falling back to QR: {e}")
            return False
        await asyncio.to_thread(_atomic_write, self.creds_path, json.dumps(creds, indent=2))
        logger.info("Session seed decoded and saved")
        return True

    async def _resolve_seed(self, seed: str) -> dict[str, Any]:
        if seed.startswith(("http://", "https://")):
            return _validate_creds(await self._fetch(seed))

        label, sep, payload = seed.partition("~")
        if not sep or not payload:
            raise ValueError("seed must look like 'Name~<data>'")
        logger.info(f"Decoding session seed for {label}")
        try:
            return _validate_creds(_decode_base64_json(payload))
        except ValueError:
            if not self.seed_url:
                raise
        return _validate_creds(await self._fetch(self.seed_url.format(id=payload)))

    async def _fetch(self, url: str) -> Any:
        async with httpx.AsyncClient(timeout=_SEED_FETCH_TIMEOUT, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
        text = resp.text.strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return _decode_base64_json(text)

    async def load_auth_state(self) -> tuple[AuthState, Callable[[], Awaitable[None]]]:
        """Read creds + key store. Returns (state, save_creds)."""
        await asyncio.to_thread(self._ensure_dir)
        state = AuthState(keys=KeyStore(self.session_dir, self._record_io_error))
        if self.has_session():
            try:
                text = await asyncio.to_thread(self.creds_path.read_text, "utf-8")
                state.creds = loads(text)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not parse {CREDS_FILE}, a new session will be created: {e}")

        async def save_creds() -> None:
            try:
                await asyncio.to_thread(self._ensure_dir)
                await asyncio.to_thread(_atomic_write, self.creds_path, dumps(state.creds))
            except (OSError, TypeError) as e:
                self._record_io_error(e)
                return
            self.consecutive_io_failures = 0

        return state, save_creds

    def _record_io_error(self, error: Exception) -> None:
        self.io_failures += 1
        self.consecutive_io_failures += 1
        self.last_io_error = str(error)
        logger.error(f"Session I/O failed ({self.consecutive_io_failures} in a row): {error}")

    async def clean_session(self) -> None:
        logger.warning(f"Cleaning session directory {self.session_dir}")

        def _wipe() -> None:
            shutil.rmtree(self.session_dir, ignore_errors=True)
            self._ensure_dir()

        try:
            await asyncio.to_thread(_wipe)
        except OSError as e:
            self._record_io_error(e)


def _decode_base64_json(payload: str) -> Any:
    try:
        raw = base64.b64decode(payload + "=" * (-len(payload) % 4), validate=False)
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"seed payload is not base64 JSON: {e}") from e


def _validate_creds(data: Any) -> dict[str, Any]:
    if isinstance(data, dict) and "creds" in data and isinstance(data["creds"], dict):
        data = data["creds"]
    if not isinstance(data, dict):
        raise ValueError("seed did not decode to a JSON object")
    missing = [f for f in REQUIRED_CREDS_FIELDS if f not in data]
    if missing:
        raise ValueError(f"seed is missing credential fields: {', '.join(missing)}")
    return data
