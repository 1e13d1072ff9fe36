"""
Device authorization store.

Keeps the allow / block / pending lists and the last-seen timestamps for every
device that has checked in, and writes the whole document back to a JSON file
after each operation.

A device is in exactly one of four states:
  - unseen   never checked in, not listed anywhere
  - pending  checked in, waiting for an operator decision
  - allowed  in the allow list
  - blocked  in the block list

Memory is the source of truth. The file is only read once, when the store is
opened, and every operation (including the disk write) runs under one lock.
"""
from __future__ import annotations

import contextlib
import logging
import secrets
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

log = logging.getLogger("device-store")

DEFAULT_INTERVAL_SEC = 30

REASON_MISSING = "missing deviceId"
REASON_BLOCKED = "blocked"
REASON_NOT_ALLOWED = "not allowed"


class InvalidDeviceId(ValueError):
    """Device identifier is empty after trimming whitespace, or not valid UTF-8."""


class PersistenceError(OSError):
    """The store document could not be written to disk."""


def now_iso(now: Optional[datetime] = None) -> str:
    dt = now or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_admin_token() -> str:
    return f"admin_{secrets.token_hex(16)}"


def _clean(device_id) -> str:
    cleaned = str(device_id or "").strip()
    try:
        cleaned.encode("utf-8")
    except UnicodeEncodeError:
        # lone surrogates cannot be written to the store file
        return ""
    return cleaned


def _require(device_id) -> str:
    cleaned = _clean(device_id)
    if not cleaned:
        raise InvalidDeviceId("deviceId required")
    return cleaned


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for raw in ids:
        device_id = _clean(raw)
        if device_id and device_id not in seen:
            seen.add(device_id)
            out.append(device_id)
    return out


def _discard(ids: List[str], device_id: str) -> bool:
    if device_id in ids:
        ids.remove(device_id)
        return True
    return False


class ServerData(BaseModel):
    """On-disk layout of the store (camelCase keys on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    admin_token: str = Field(default="", alias="adminToken")
    allow: List[str] = Field(default_factory=list)
    block: List[str] = Field(default_factory=list)
    pending: List[str] = Field(default_factory=list)
    last_seen: Dict[str, str] = Field(default_factory=dict, alias="lastSeen")

    @field_validator("admin_token", mode="before")
    @classmethod
    def _token_or_empty(cls, v):
        return (v or "").strip() if isinstance(v, str) or v is None else v

    @field_validator("allow", "block", "pending", mode="before")
    @classmethod
    def _list_or_empty(cls, v):
        return [] if v is None else v

    @field_validator("last_seen", mode="before")
    @classmethod
    def _map_or_empty(cls, v):
        return {} if v is None else v

    # Hand-edited files may break the invariants; block wins over allow and
    # classified devices are never pending.
    @model_validator(mode="after")
    def _disjoint_lists(self):
        block = _dedupe(self.block)
        blocked = set(block)
        allow = [d for d in _dedupe(self.allow) if d not in blocked]
        classified = blocked.union(allow)
        self.block = block
        self.allow = allow
        self.pending = [d for d in _dedupe(self.pending) if d not in classified]
        return self


class CheckResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    force_exit: bool = Field(alias="forceExit")
    interval_sec: int = Field(alias="intervalSec")
    reason: str = ""


class Snapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allow: List[str]
    block: List[str]
    pending: List[str]
    last_seen: Dict[str, str] = Field(alias="lastSeen")


def load_server_data(path: Path) -> Optional[ServerData]:
    """Return the persisted store, or None when there is nothing usable on disk."""
    if not path.exists():
        return None
    try:
        return ServerData.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValidationError) as exc:
        log.warning("Store file %s is unreadable, starting from a fresh seed: %s", path, exc)
        return None


def write_server_data(path: Path, data: ServerData) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        body = data.model_dump_json(by_alias=True, indent=2) + "\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(body, encoding="utf-8")
        tmp.replace(path)
    except (OSError, ValueError) as exc:
        with contextlib.suppress(OSError):
            tmp.unlink(missing_ok=True)
        raise PersistenceError(f"could not write {path}: {exc}") from exc


class AuthorizationStore:
    """
    Owns the device lists and the file they are persisted to.

    Every public method takes the lock for the whole read-modify-write, so
    concurrent allow/block calls on one device always end with the device in
    exactly one list. A failed disk write is logged and the in-memory change
    is kept; the next successful write rewrites the full document.
    """

    def __init__(self, path, data: ServerData, interval_sec: int = DEFAULT_INTERVAL_SEC):
        self.path = Path(path)
        self.interval_sec = interval_sec
        self.generated_token = False
        self._data = data
        self._lock = threading.Lock()
        self._persisted = True

    @classmethod
    def open(cls, path, admin_token: str = "", interval_sec: int = DEFAULT_INTERVAL_SEC) -> "AuthorizationStore":
        path = Path(path).expanduser()
        data = load_server_data(path)
        needs_write = data is None
        if data is None:
            data = ServerData()
        generated = False
        if not data.admin_token:
            data.admin_token = (admin_token or "").strip()
            if not data.admin_token:
                data.admin_token = generate_admin_token()
                generated = True
            needs_write = True

        store = cls(path, data, interval_sec=interval_sec)
        store.generated_token = generated
        if needs_write:
            with store._lock:
                store._save()
            log.info("Seeded device store at %s", path)
        else:
            log.info(
                "Loaded device store from %s (%d allowed, %d blocked, %d pending)",
                path,
                len(data.allow),
                len(data.block),
                len(data.pending),
            )
        return store

    @property
    def admin_token(self) -> str:
        return self._data.admin_token

    @property
    def persisted(self) -> bool:
        return self._persisted

    def verify_admin_token(self, candidate: str) -> bool:
        candidate = (candidate or "").strip()
        if not candidate:
            return False
        return secrets.compare_digest(candidate.encode("utf-8"), self._data.admin_token.encode("utf-8"))

    def _save(self) -> None:
        # Caller holds self._lock.
        try:
            write_server_data(self.path, self._data)
        except PersistenceError:
            self._persisted = False
            log.exception("Failed to persist device store to %s, keeping in-memory state", self.path)
        else:
            self._persisted = True

    def _result(self, allowed: bool, reason: str) -> CheckResult:
        return CheckResult(
            allowed=allowed,
            force_exit=not allowed,
            interval_sec=self.interval_sec,
            reason=reason,
        )

    def check(self, device_id, now: Optional[datetime] = None, version: str = "") -> CheckResult:
        """Resolve a device check-in, recording it as pending when unclassified."""
        device_id = _clean(device_id)
        if not device_id:
            return self._result(False, REASON_MISSING)

        seen_at = now_iso(now)
        with self._lock:
            data = self._data
            data.last_seen[device_id] = seen_at
            if device_id in data.block:
                result = self._result(False, REASON_BLOCKED)
            elif device_id in data.allow:
                result = self._result(True, "")
            else:
                if device_id not in data.pending:
                    data.pending.append(device_id)
                    log.info("New pending device: %s (v%s)", device_id, version or "?")
                result = self._result(False, REASON_NOT_ALLOWED)
            self._save()
        return result

    def _classify(self, device_id: str, target: List[str], opposing: List[str]) -> List[str]:
        _discard(self._data.pending, device_id)
        _discard(opposing, device_id)
        if device_id not in target:
            target.append(device_id)
        self._save()
        return list(target)

    def allow(self, device_id) -> List[str]:
        device_id = _require(device_id)
        with self._lock:
            allowed = self._classify(device_id, self._data.allow, self._data.block)
        log.info("Device allowed: %s", device_id)
        return allowed

    def block(self, device_id) -> List[str]:
        device_id = _require(device_id)
        with self._lock:
            blocked = self._classify(device_id, self._data.block, self._data.allow)
        log.info("Device blocked: %s", device_id)
        return blocked

    def unallow(self, device_id) -> List[str]:
        device_id = _require(device_id)
        with self._lock:
            removed = _discard(self._data.allow, device_id)
            self._save()
            allowed = list(self._data.allow)
        if removed:
            log.info("Device removed from allow list: %s", device_id)
        return allowed

    def unblock(self, device_id) -> List[str]:
        device_id = _require(device_id)
        with self._lock:
            removed = _discard(self._data.block, device_id)
            self._save()
            blocked = list(self._data.block)
        if removed:
            log.info("Device removed from block list: %s", device_id)
        return blocked

    def clear_pending(self) -> List[str]:
        with self._lock:
            cleared = len(self._data.pending)
            self._data.pending.clear()
            self._save()
        log.info("Cleared %d pending device(s)", cleared)
        return []

    def list(self) -> Snapshot:
        with self._lock:
            data = self._data
            return Snapshot(
                allow=list(data.allow),
                block=list(data.block),
                pending=list(data.pending),
                last_seen=dict(data.last_seen),
            )
