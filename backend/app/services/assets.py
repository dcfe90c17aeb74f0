"""Binary asset lifecycle: staged -> permanent -> trashed -> purged.

Lifecycle state is never stored; it is read from the key prefix by
``asset_state`` and nowhere else:

    temp/<owner>/<ms>-<name>        staged, written by the client with a PUT capability
    uploads/<ms>-<rand>-<name>      permanent, referenced by a persisted entity
    trash/<ms>-<name>               soft-deleted, recoverable

Promotion is idempotent. Each permanent copy is tagged with the staged key it
came from, so a retried request that finds the staged object gone gets back the
permanent reference produced by the earlier attempt once that copy is found in
``uploads/``. Cleanup of references an entity stopped
using is collected into a ``CleanupPlan`` and run after the database commit.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Sequence, TypeVar
from urllib.parse import urlsplit

import anyio

from app.core import metrics
from app.services.object_store import ObjectNotFoundError, ObjectStoreError, S3ObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGED_PREFIX = "temp/"
PERMANENT_PREFIX = "uploads/"
TRASH_PREFIX = "trash/"
SOURCE_KEY_TAG = "staged-key"

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_MAX_NAME_LENGTH = 120


class AssetState(str, enum.Enum):
    staged = "staged"
    permanent = "permanent"
    trashed = "trashed"
    external = "external"


class AssetErrorKind(str, enum.Enum):
    validation = "VALIDATION"
    source_missing = "SOURCE_MISSING"
    store_transient = "STORE_TRANSIENT"


class AssetError(Exception):
    def __init__(self, kind: AssetErrorKind, message: str, *, key: str | None = None):
        self.kind = kind
        self.key = key
        super().__init__(message)


@dataclass(frozen=True)
class UploadCapability:
    upload_url: str
    key: str
    public_reference: str
    expires_in: int
    expires_at: datetime


def extract_key(reference: str) -> str:
    """Object-store key of a reference: URL path without the leading slash or query."""
    raw = (reference or "").strip()
    if not raw:
        raise AssetError(AssetErrorKind.validation, "Empty asset reference")
    if "://" in raw:
        try:
            parts = urlsplit(raw)
        except ValueError as exc:
            raise AssetError(AssetErrorKind.validation, "Invalid asset reference") from exc
        if not parts.netloc:
            raise AssetError(AssetErrorKind.validation, "Invalid asset reference")
        path = parts.path
    else:
        path = raw
    if path.startswith("/"):
        path = path[1:]
    key = path.split("?", 1)[0].split("#", 1)[0]
    if not key:
        raise AssetError(AssetErrorKind.validation, "Asset reference has no key")
    return key


def asset_state(reference: str) -> AssetState:
    key = extract_key(reference)
    if key.startswith(STAGED_PREFIX):
        return AssetState.staged
    if key.startswith(PERMANENT_PREFIX):
        return AssetState.permanent
    if key.startswith(TRASH_PREFIX):
        return AssetState.trashed
    return AssetState.external


def sanitize_file_name(file_name: str) -> str:
    base = (file_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = re.sub(r"\s+", "_", base.strip())
    base = re.sub(r"[^A-Za-z0-9._-]", "", base).lstrip(".")
    return base[-_MAX_NAME_LENGTH:] or "file"


def _epoch_millis() -> int:
    return time.time_ns() // 1_000_000


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def _leaf(key: str) -> str:
    return key.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class IncomingAsset:
    reference: str
    existing_id: Any | None = None


@dataclass
class AssetDiff:
    added: list[IncomingAsset] = field(default_factory=list)
    retained: list[tuple[str, IncomingAsset]] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def diff_assets(
    persisted: Sequence[str],
    incoming: Sequence[IncomingAsset],
    *,
    identity: Callable[[str], str] = extract_key,
) -> AssetDiff:
    """Partition an edit by asset identity into added, retained and removed references.

    ``retained`` pairs the persisted reference with the incoming item so callers
    keep the stored form. Incoming duplicates of the same identity collapse onto
    the first occurrence.
    """
    persisted_by_key: dict[str, str] = {}
    for reference in persisted:
        persisted_by_key.setdefault(identity(reference), reference)

    diff = AssetDiff()
    seen: set[str] = set()
    for item in incoming:
        key = identity(item.reference)
        if key in seen:
            continue
        seen.add(key)
        if key in persisted_by_key:
            diff.retained.append((persisted_by_key[key], item))
        else:
            diff.added.append(item)
    diff.removed = [reference for key, reference in persisted_by_key.items() if key not in seen]
    return diff


class CleanupAction(str, enum.Enum):
    soft_delete = "soft_delete"
    purge = "purge"


@dataclass(frozen=True)
class PendingCleanup:
    action: CleanupAction
    reference: str


@dataclass
class CleanupPlan:
    """Object-store work to run only after the owning database write committed."""

    actions: list[PendingCleanup] = field(default_factory=list)

    def trash(self, reference: str | None) -> None:
        if reference:
            self.actions.append(PendingCleanup(CleanupAction.soft_delete, reference))

    def purge(self, reference: str | None) -> None:
        if reference:
            self.actions.append(PendingCleanup(CleanupAction.purge, reference))

    def without(self, references: Iterable[str]) -> "CleanupPlan":
        skip = set(references)
        return CleanupPlan([action for action in self.actions if action.reference not in skip])

    @property
    def references(self) -> list[str]:
        return [action.reference for action in self.actions]

    def __len__(self) -> int:
        return len(self.actions)


class AssetManager:
    def __init__(self, store: S3ObjectStore, *, upload_ttl_seconds: int = 3600, view_ttl_seconds: int = 3600):
        self.store = store
        self.upload_ttl_seconds = upload_ttl_seconds
        self.view_ttl_seconds = view_ttl_seconds

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        call = functools.partial(fn, *args, **kwargs) if kwargs else functools.partial(fn, *args)
        try:
            return await anyio.to_thread.run_sync(call)
        except ObjectNotFoundError:
            raise
        except ObjectStoreError as exc:
            raise AssetError(AssetErrorKind.store_transient, str(exc), key=exc.key) from exc

    def owns(self, reference: str | None) -> bool:
        return bool(reference) and self.store.owns(reference)

    def identity(self, reference: str) -> str:
        """Comparison key for edits: the object key for owned references, host plus key otherwise.

        Signed and unsigned URLs of one object share an identity; external URLs
        on different hosts never do.
        """
        key = extract_key(reference)
        if self.store.owns(reference):
            return key
        return f"{(urlsplit(reference.strip()).hostname or '').lower()}/{key}"

    def diff(self, persisted: Sequence[str], incoming: Sequence[IncomingAsset]) -> AssetDiff:
        return diff_assets(persisted, incoming, identity=self.identity)

    def normalize(self, reference: str) -> str:
        """Stored form of a reference: the unsigned public URL for owned keys."""
        if not self.store.owns(reference):
            return reference
        return self.store.public_url(extract_key(reference))

    async def issue_upload_capability(self, original_file_name: str, content_type: str, owner_id: Any) -> UploadCapability:
        owner_segment = re.sub(r"[^A-Za-z0-9_-]", "", str(owner_id))
        if not owner_segment:
            raise AssetError(AssetErrorKind.validation, "Invalid owner id")
        key = f"{STAGED_PREFIX}{owner_segment}/{_epoch_millis()}-{sanitize_file_name(original_file_name)}"
        upload_url = await self._run(
            self.store.presign, key, "PUT", self.upload_ttl_seconds, content_type=content_type
        )
        metrics.record_upload_capability()
        return UploadCapability(
            upload_url=upload_url,
            key=key,
            public_reference=self.store.public_url(key),
            expires_in=self.upload_ttl_seconds,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.upload_ttl_seconds),
        )

    async def promote(self, reference: str) -> str:
        if not self.store.owns(reference):
            raise AssetError(AssetErrorKind.validation, "Asset is not stored in this bucket")
        key = extract_key(reference)
        state = asset_state(key)
        if state is AssetState.permanent:
            return self.store.public_url(key)
        if state is not AssetState.staged:
            raise AssetError(AssetErrorKind.validation, "Only staged uploads can be promoted", key=key)

        name = _leaf(key)
        stamp = _epoch_millis()
        permanent_key = f"{PERMANENT_PREFIX}{stamp}-{_random_suffix()}-{name}"
        try:
            await self._run(self.store.copy, key, permanent_key, tags={SOURCE_KEY_TAG: key})
        except ObjectNotFoundError:
            return await self._recover_promoted(key)

        try:
            await self._run(self.store.copy, key, f"{TRASH_PREFIX}{stamp}-{name}")
        except ObjectNotFoundError:
            # a concurrent promotion consumed the staged key after our copy landed
            logger.warning("asset_shadow_copy_skipped", extra={"key": key})
        else:
            await self._run(self.store.delete, key)

        metrics.record_promotion()
        logger.info("asset_promoted", extra={"key": permanent_key, "state": AssetState.permanent.value})
        return self.store.public_url(permanent_key)

    async def accept(self, reference: str) -> str:
        """Reference to persist for an incoming asset: promoted when owned, unchanged when external."""
        if not self.store.owns(reference):
            return reference
        return await self.promote(reference)

    def _find_promoted(self, staged_key: str) -> str | None:
        """Permanent key an earlier promotion of ``staged_key`` produced, if any.

        Pages through ``uploads/`` from the staged timestamp onwards. Two owners
        can stage the same file name in the same millisecond, so a name match
        only counts once the copy's ``staged-key`` tag names this exact key.
        """
        name = _leaf(staged_key)
        staged_stamp = name.split("-", 1)[0]
        start_after = f"{PERMANENT_PREFIX}{staged_stamp}" if staged_stamp.isdigit() else None
        for candidate in self.store.iter_keys(PERMANENT_PREFIX, start_after=start_after):
            if not candidate.endswith(f"-{name}"):
                continue
            try:
                tags = self.store.get_tags(candidate)
            except ObjectNotFoundError:
                continue
            if tags.get(SOURCE_KEY_TAG) == staged_key:
                return candidate
        return None

    async def _recover_promoted(self, staged_key: str) -> str:
        metrics.record_source_missing()
        match = await self._run(self._find_promoted, staged_key)
        if match is None:
            logger.error(
                "asset_source_missing_unverified",
                extra={"key": staged_key, "kind": AssetErrorKind.source_missing.value},
            )
            raise AssetError(
                AssetErrorKind.source_missing,
                "Uploaded file is no longer available, upload it again",
                key=staged_key,
            )
        logger.warning(
            "asset_source_missing",
            extra={"key": staged_key, "permanent_key": match, "kind": AssetErrorKind.source_missing.value},
        )
        return self.store.public_url(match)

    async def soft_delete(self, reference: str) -> bool:
        if not self.owns(reference):
            return False
        try:
            key = extract_key(reference)
            if asset_state(key) is not AssetState.permanent:
                return False
            await self._run(self.store.copy, key, f"{TRASH_PREFIX}{_epoch_millis()}-{_leaf(key)}")
            await self._run(self.store.delete, key)
        except (AssetError, ObjectNotFoundError) as exc:
            metrics.record_cleanup_failure()
            logger.warning(
                "asset_cleanup_failed",
                extra={"key": getattr(exc, "key", None) or reference, "action": CleanupAction.soft_delete.value, "error": str(exc)},
            )
            return False
        logger.info("asset_trashed", extra={"key": key, "state": AssetState.trashed.value})
        return True

    async def purge(self, reference: str) -> bool:
        if not self.owns(reference):
            return False
        try:
            key = extract_key(reference)
            if asset_state(key) not in (AssetState.permanent, AssetState.staged):
                return False
            await self._run(self.store.delete, key)
        except (AssetError, ObjectNotFoundError) as exc:
            metrics.record_cleanup_failure()
            logger.warning(
                "asset_cleanup_failed",
                extra={"key": reference, "action": CleanupAction.purge.value, "error": str(exc)},
            )
            return False
        logger.info("asset_purged", extra={"key": key})
        return True

    async def run_cleanup(self, plan: CleanupPlan) -> None:
        if not plan:
            return
        handlers = {CleanupAction.soft_delete: self.soft_delete, CleanupAction.purge: self.purge}
        results = await asyncio.gather(*(handlers[item.action](item.reference) for item in plan.actions))
        failed = sum(1 for ok in results if not ok)
        if failed:
            logger.warning("asset_cleanup_incomplete", extra={"failed": failed, "total": len(plan)})

    async def mint_view_capability(self, reference: str) -> str:
        if not self.store.owns(reference):
            return reference
        key = extract_key(reference)
        return await self._run(self.store.presign, key, "GET", self.view_ttl_seconds)

    async def sign_or_fallback(self, reference: str | None) -> str | None:
        if not reference:
            return reference
        try:
            return await self.mint_view_capability(reference)
        except (AssetError, ObjectStoreError) as exc:
            metrics.record_sign_fallback()
            logger.warning("asset_sign_failed", extra={"key": reference, "error": str(exc)})
            return reference

    async def sign_many(self, references: Iterable[str | None]) -> dict[str, str]:
        unique = list(dict.fromkeys(ref for ref in references if ref))
        signed = await asyncio.gather(*(self.sign_or_fallback(ref) for ref in unique))
        return {ref: url or ref for ref, url in zip(unique, signed)}
