"""Persistent per-platform session records grouped under internal IDs."""

import hashlib
import json
import logging
import uuid
from collections.abc import Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite
from pydantic import ValidationError

from ..database import KVBackend
from ..errors import ErrorHandler, Platform
from ..models import PlatformSessionRecord, SessionBundle
from .invalidation import DebouncedInvalidator

logger = logging.getLogger(__name__)

KEY_PREFIX = "session:"
DETERMINISTIC_PREFIX = "det_"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def session_key(internal_id: str, platform: str) -> str:
    return f"{KEY_PREFIX}{internal_id}:{platform}"


def parse_session_key(key: str) -> Optional[tuple[str, str]]:
    """Split ``session:{internal_id}:{platform}``; None for malformed keys."""
    parts = key.split(":")
    if len(parts) != 3 or parts[0] != KEY_PREFIX[:-1] or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return _OLDEST
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStore:
    """Session bundles stored in a key/value backend."""

    def __init__(
        self,
        backend: KVBackend,
        invalidator: Optional[DebouncedInvalidator] = None,
    ):
        """
        Initialize the store.

        Args:
            backend: Key/value backend (get/set/delete/keys)
            invalidator: Receives a signal after every mutation
        """
        self.backend = backend
        self.invalidator = invalidator

    @staticmethod
    def derive_deterministic_id(email: str, password: str, platform: str) -> str:
        """
        Derive a stable internal ID from user credentials and platform.

        Args:
            email: User email (case and surrounding whitespace ignored)
            password: User password
            platform: Platform name

        Returns:
            ``det_`` followed by 32 hex characters of a SHA-256 digest
        """
        material = f"{email.lower().strip()}:{password}:{platform}"
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
        return f"{DETERMINISTIC_PREFIX}{digest[:32]}"

    @staticmethod
    def generate_session_id() -> str:
        """Random internal ID (one per browser session)."""
        return uuid.uuid4().hex

    @asynccontextmanager
    async def _backend_call(self, operation: str):
        try:
            yield
        except (aiosqlite.Error, OSError, RuntimeError) as e:
            logger.error(f"Session store unavailable during {operation}: {e}")
            raise ErrorHandler.create_storage_error(operation, e) from e

    def _invalidate(self, internal_id: str) -> None:
        if self.invalidator is not None:
            self.invalidator.signal(internal_id)

    @staticmethod
    def _decode(key: str, raw: Any) -> Optional[PlatformSessionRecord]:
        if raw is None:
            return None
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return PlatformSessionRecord.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring invalid session data under {key}: {e}")
            return None

    async def save(self, internal_id: str, platform: str, record: PlatformSessionRecord) -> None:
        """Upsert one platform record into the bundle."""
        key = session_key(internal_id, platform)
        async with self._backend_call("save_session"):
            await self.backend.set(key, record.to_json())
        self._invalidate(internal_id)
        logger.info(f"Saved {platform} session: {internal_id}")

    async def get(self, internal_id: str, platform: str) -> Optional[PlatformSessionRecord]:
        """Get one record; None when absent or not a valid record."""
        key = session_key(internal_id, platform)
        async with self._backend_call("get_session"):
            raw = await self.backend.get(key)
        return self._decode(key, raw)

    async def get_bundle(self, internal_id: str) -> Optional[SessionBundle]:
        """All valid records under internal_id, or None if there are none."""
        prefix = f"{KEY_PREFIX}{internal_id}:"
        bundle: SessionBundle = {}
        async with self._backend_call("get_bundle"):
            keys = await self.backend.keys(prefix)
            for key in keys:
                platform = key[len(prefix):]
                if not platform or ":" in platform:
                    continue
                record = self._decode(key, await self.backend.get(key))
                if record is not None:
                    bundle[platform] = record
        return bundle or None

    async def update(
        self, internal_id: str, platform: str, partial: Mapping[str, Any]
    ) -> PlatformSessionRecord:
        """
        Merge partial fields onto the stored record and save it.

        None values are ignored; ``extra`` is merged key by key. A missing
        record starts out with an empty ``session_id``.

        Returns:
            The merged record
        """
        existing = await self.get(internal_id, platform)
        data = (
            existing.model_dump(exclude_none=True)
            if existing is not None
            else {"session_id": ""}
        )

        fields = PlatformSessionRecord.model_fields
        for name, value in partial.items():
            if value is None:
                continue
            field = next(
                (field_name for field_name, info in fields.items()
                 if name in (field_name, info.alias)),
                None,
            )
            if field is None:
                logger.debug(f"Ignoring unknown session field {name!r}")
                continue
            if field == "extra":
                merged = dict(data.get("extra") or {})
                merged.update({k: v for k, v in value.items() if v is not None})
                data["extra"] = merged
            else:
                data[field] = value

        record = PlatformSessionRecord.model_validate(data)
        await self.save(internal_id, platform, record)
        return record

    async def delete(self, internal_id: str, platform: str) -> bool:
        """Delete one platform entry."""
        async with self._backend_call("delete_session"):
            removed = await self.backend.delete(session_key(internal_id, platform))
        self._invalidate(internal_id)
        logger.info(f"Deleted {platform} session: {internal_id}")
        return bool(removed)

    async def delete_bundle(self, internal_id: str) -> int:
        """
        Delete every platform entry under internal_id.

        Returns:
            Number of entries removed
        """
        prefix = f"{KEY_PREFIX}{internal_id}:"
        async with self._backend_call("delete_bundle"):
            keys = await self.backend.keys(prefix)
            for key in keys:
                await self.backend.delete(key)
        if keys:
            self._invalidate(internal_id)
            logger.info(f"Deleted all sessions for: {internal_id}")
        return len(keys)

    async def _records_for_platform(self, platform: str) -> list[tuple[str, PlatformSessionRecord]]:
        records = []
        async with self._backend_call("scan_sessions"):
            keys = await self.backend.keys(KEY_PREFIX)
            for key in keys:
                parsed = parse_session_key(key)
                if parsed is None or parsed[1] != platform:
                    continue
                record = self._decode(key, await self.backend.get(key))
                if record is not None:
                    records.append((parsed[0], record))
        return records

    async def save_with_deduplication(
        self, candidate_id: str, platform: str, record: PlatformSessionRecord
    ) -> str:
        """
        Save a record so that at most one bundle holds the same captured session.

        Records with both email and password go under their deterministic ID.
        Existing records for the platform with the same ``session_id`` and
        ``user_email`` are duplicates: a single duplicate keeps its ID; with
        several, the most recently extracted one is kept (the candidate wins
        ties) and the others' platform entries are deleted.

        Args:
            candidate_id: Internal ID the caller would use
            platform: Platform name
            record: Record to save

        Returns:
            The internal ID the record was saved under
        """
        if not record.session_id:
            raise ErrorHandler.create_cookie_error(
                Platform.from_name(platform), "save_session", "empty session id"
            )

        if record.user_email and record.user_password:
            candidate_id = self.derive_deterministic_id(
                record.user_email, record.user_password, platform
            )
            logger.info(f"Using deterministic session ID for {platform}: {candidate_id}")

        duplicates = [
            (internal_id, existing)
            for internal_id, existing in await self._records_for_platform(platform)
            if existing.session_id == record.session_id
            and existing.user_email == record.user_email
        ]

        if not duplicates:
            final_id = candidate_id
        elif len(duplicates) == 1:
            final_id = duplicates[0][0]
        else:
            ranked = sorted(
                duplicates,
                key=lambda item: (_as_utc(item[1].extracted_at), item[0] == candidate_id),
                reverse=True,
            )
            final_id = ranked[0][0]
            for internal_id, _ in ranked[1:]:
                await self.delete(internal_id, platform)
            logger.info(
                f"Collapsed {len(duplicates)} duplicate {platform} sessions into {final_id}"
            )

        await self.save(final_id, platform, record)
        return final_id

    async def list_internal_ids(self) -> list[str]:
        async with self._backend_call("list_sessions"):
            keys = await self.backend.keys(KEY_PREFIX)
        ids = []
        for key in keys:
            parsed = parse_session_key(key)
            if parsed and parsed[0] not in ids:
                ids.append(parsed[0])
        return ids

    async def get_all_sessions(self) -> dict[str, SessionBundle]:
        """Every valid record grouped by internal ID."""
        sessions: dict[str, SessionBundle] = {}
        async with self._backend_call("list_sessions"):
            keys = await self.backend.keys(KEY_PREFIX)
            for key in keys:
                parsed = parse_session_key(key)
                if parsed is None:
                    continue
                record = self._decode(key, await self.backend.get(key))
                if record is not None:
                    sessions.setdefault(parsed[0], {})[parsed[1]] = record
        return sessions

    async def get_stats(self) -> dict[str, Any]:
        """Total stored entries and counts per platform."""
        async with self._backend_call("get_stats"):
            keys = await self.backend.keys(KEY_PREFIX)

        platform_counts: dict[str, int] = {}
        for key in keys:
            parsed = parse_session_key(key)
            if parsed is None:
                continue
            platform_counts[parsed[1]] = platform_counts.get(parsed[1], 0) + 1

        return {"total_sessions": len(keys), "platform_counts": platform_counts}
