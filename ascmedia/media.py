# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Screenshot and app preview synchronisation."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath
from typing import Callable, Optional

import requests

from .client import (
    ApiAuth,
    ApiError,
    AssetKind,
    AssetState,
    CardinalityMismatch,
    HttpApiClient,
    IntegrityError,
    MediaApiInterface,
    MediaError,
    MediaUploadError,
    RemoteAsset,
    RemoteAssetSet,
    ReplaceError,
    ReserveError,
    TransportError,
    UploadExpiredError,
    UploadOperation,
)
from .folder import LocalAssetFile, MediaPlan, expand_path, scan_media_folder

logger = logging.getLogger(__name__)

MD5_BUFFER_SIZE = 1024 * 1024
RESERVE_ATTEMPTS = 2
COMMIT_REJECTED_STATUSES = (409, 422)


# --- Helpers ---


def md5_hex(path: str | Path) -> str:
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        while data := f.read(MD5_BUFFER_SIZE):
            md5.update(data)
    return md5.hexdigest()


def read_range(path: str | Path, offset: int, length: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        data = f.read(length)
    if len(data) != length:
        raise MediaUploadError(
            f"Short read from '{path}': wanted {length} bytes at {offset}, got {len(data)}."
        )
    return data


def resolve_image_url(template_url: str, width: int, height: int, file_name: str) -> str:
    """Fill the {w}, {h} and {f} placeholders of an image template URL."""
    ext = PurePath(file_name).suffix.lower()
    fmt = "jpg" if ext in (".jpg", ".jpeg") else "png"
    return (
        template_url.replace("{w}", str(width))
        .replace("{h}", str(height))
        .replace("{f}", fmt)
    )


def resolve_delivery_url(asset: RemoteAsset) -> str:
    descriptor = asset.delivery_descriptor
    if not descriptor:
        raise MediaError(f"No download URL available for '{asset.file_name or asset.id}'.")
    if asset.kind is AssetKind.PREVIEW:
        return descriptor
    return resolve_image_url(descriptor, asset.width, asset.height, asset.file_name)


def download_file_name(asset: RemoteAsset, position: int) -> str:
    """`NN_<original name>`, numbered by remote position."""
    default_ext = ".png" if asset.kind is AssetKind.SCREENSHOT else ".mp4"
    original = PurePath(asset.file_name).name if asset.file_name else ""
    return f"{position:02d}_{original or asset.id + default_ext}"


# --- Result Data Classes ---


@dataclass
class RunSummary:
    """Counts reported at the end of every command."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    assets: list[RemoteAsset] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def record_failure(self, label: str, error: Exception, count: int = 1):
        self.failed += count
        self.errors.append((label, str(error)))
        logger.error("%s: %s", label, error)

    def __str__(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed, {self.skipped} skipped"


class PollOutcome(Enum):
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class PollResult:
    outcome: PollOutcome
    asset: RemoteAsset

    @property
    def state(self) -> AssetState:
        return self.asset.state


@dataclass
class MediaItemStatus:
    """Processing state of one remote asset, with its position in its set."""

    set: RemoteAssetSet
    asset: RemoteAsset
    position: int  # 1-based

    @property
    def state(self) -> AssetState:
        return self.asset.state

    @property
    def is_complete(self) -> bool:
        return self.asset.state is AssetState.COMPLETE

    @property
    def is_failed(self) -> bool:
        return self.asset.state is AssetState.FAILED

    @property
    def is_stuck(self) -> bool:
        return self.asset.state.is_stuck


def _set_sort_key(s: RemoteAssetSet) -> tuple[str, str, str]:
    return s.locale, s.display_type, s.kind.value


def _set_label(s: RemoteAssetSet) -> str:
    suffix = " (previews)" if s.kind is AssetKind.PREVIEW else ""
    return f"[{s.locale}] {s.display_type}{suffix}"


@dataclass
class VerifyReport:
    """Snapshot of every set of a version and the state of its items."""

    version_id: str
    sets: list[RemoteAssetSet] = field(default_factory=list)

    def items(self, remote_set: Optional[RemoteAssetSet] = None) -> list[MediaItemStatus]:
        sets = [remote_set] if remote_set is not None else self.sets
        return [
            MediaItemStatus(set=s, asset=asset, position=i)
            for s in sets
            for i, asset in enumerate(s.items, 1)
        ]

    @property
    def total(self) -> int:
        return sum(len(s.items) for s in self.sets)

    @property
    def stuck(self) -> list[MediaItemStatus]:
        return [i for i in self.items() if i.is_stuck]

    @property
    def failed(self) -> list[MediaItemStatus]:
        return [i for i in self.items() if i.is_failed]

    @property
    def complete(self) -> int:
        return sum(1 for i in self.items() if i.is_complete)

    @property
    def is_all_clear(self) -> bool:
        return self.complete == self.total

    def is_compact(self, remote_set: RemoteAssetSet) -> bool:
        return all(i.is_complete for i in self.items(remote_set))

    def lines(self) -> list[str]:
        """Compact line for finished sets, one line per item otherwise."""
        out: list[str] = []
        for s in sorted(self.sets, key=_set_sort_key):
            if not s.items:
                continue
            if self.is_compact(s):
                out.append(f"{_set_label(s)}: {len(s.items)}/{len(s.items)} complete")
                continue
            out.append(f"{_set_label(s)}:")
            for item in self.items(s):
                marker = "complete" if item.is_complete else item.state.value
                out.append(f"  #{item.position}  {item.asset.file_name}    {marker}")
        return out

    def summary_line(self) -> str:
        if self.total == 0:
            return "No media found for this version."
        if self.is_all_clear:
            n = self.total
            return f"All {n} media item{'' if n == 1 else 's'} complete."
        parts = [f"{self.complete} of {self.total} complete", f"{len(self.stuck)} stuck"]
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        return ", ".join(parts) + "."


# --- Media Sync Client ---


class MediaSyncClient:
    """
    Synchronises screenshots and app previews between a local folder and
    the sets of an App Store version.

    Usage:
        media = MediaSyncClient.from_auth(auth)
        summary = media.upload("~/media", version_id, replace=True)
        report = media.verify(version_id)
        if report.stuck:
            media.repair(report, "~/media")
        media.close()
    """

    def __init__(
        self,
        api: MediaApiInterface,
        max_workers: int = 4,
        chunk_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            api: Remote operations (normally an HttpApiClient)
            max_workers: Parallel chunk transfers per asset; 1 disables threading
            chunk_retries: Attempts per API call or chunk on transport errors
            retry_delay: Seconds between attempts, multiplied by attempt
        """
        self.api = api
        self.max_workers = max(1, max_workers)
        self.chunk_retries = max(1, chunk_retries)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock
        self._reorder_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._created_set_ids: set[str] = set()

    @classmethod
    def from_auth(
        cls, auth: ApiAuth, session: Optional[requests.Session] = None, **kwargs
    ) -> MediaSyncClient:
        return cls(HttpApiClient(auth, session), **kwargs)

    def close(self):
        close = getattr(self.api, "close", None)
        if close:
            close()

    # Remote set resolution

    @staticmethod
    def _find_set(
        sets: list[RemoteAssetSet], locale: str, display_type: str, kind: AssetKind
    ) -> Optional[RemoteAssetSet]:
        for s in sets:
            if s.locale == locale and s.display_type == display_type and s.kind is kind:
                return s
        return None

    def resolve_set(
        self,
        version_id: str,
        sets: list[RemoteAssetSet],
        locale: str,
        display_type: str,
        kind: AssetKind,
        create: bool = True,
    ) -> Optional[RemoteAssetSet]:
        """
        Return the set for (locale, display_type, kind), creating it if none
        exists. An existing empty set is returned as is. `sets` is updated
        in place with any set found on re-check or created.
        """
        found = self._find_set(sets, locale, display_type, kind)
        if found or not create:
            return found

        # another run may have created it since `sets` was fetched
        found = self._find_set(self.api.list_sets(version_id), locale, display_type, kind)
        if found is None:
            set_id = self.api.create_set(version_id, locale, display_type, kind)
            self._created_set_ids.add(set_id)
            logger.info("[%s] Created %s set for %s", locale, kind.value, display_type)
            found = RemoteAssetSet(
                id=set_id, kind=kind, locale=locale, display_type=display_type
            )
        sets.append(found)
        return found

    # Upload pipeline

    def _with_retry(self, fn: Callable, *args, **kwargs):
        """
        Call `fn`, retrying on TransportError up to `chunk_retries` attempts.

        UploadExpiredError is never retried here; the upload has to restart
        from reserve.
        """
        for attempt in range(1, self.chunk_retries + 1):
            try:
                return fn(*args, **kwargs)
            except UploadExpiredError:
                raise
            except TransportError as e:
                if attempt == self.chunk_retries:
                    raise
                logger.info(
                    "%s failed (%s), retrying (%d/%d)",
                    getattr(fn, "__name__", "request"),
                    e,
                    attempt,
                    self.chunk_retries - 1,
                )
                self._sleep(self.retry_delay * attempt)

    def _transfer(self, path: Path, operations: list[UploadOperation]):
        """Send every byte range; returns only once all have succeeded."""

        def send(op: UploadOperation):
            self._with_retry(self.api.put_chunk, op, read_range(path, op.offset, op.length))

        if self.max_workers == 1 or len(operations) == 1:
            for op in operations:
                send(op)
            return

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(operations))) as pool:
            futures = [pool.submit(send, op) for op in operations]
            for future in futures:
                future.result()

    def _discard(self, kind: AssetKind, asset_id: str):
        try:
            self._with_retry(self.api.delete_asset, kind, asset_id)
        except MediaError as e:
            logger.warning("Could not discard reserved %s %s: %s", kind.value, asset_id, e)

    def upload_file(self, local_file: LocalAssetFile, set_id: str) -> RemoteAsset:
        """Reserve, transfer and commit one file into a set."""
        kind, path = local_file.kind, local_file.path
        for attempt in range(1, RESERVE_ATTEMPTS + 1):
            try:
                asset_id, operations = self._with_retry(
                    self.api.reserve_asset,
                    set_id,
                    kind,
                    local_file.file_name,
                    local_file.file_size,
                )
            except ApiError as e:
                raise ReserveError(e.status, e.errors) from e
            except MediaUploadError as e:
                # reserved remotely but the reply was unusable
                if e.asset_id:
                    self._discard(kind, e.asset_id)
                raise
            try:
                if not operations:
                    raise MediaUploadError("No upload operations returned by the API.")
                self._transfer(path, operations)
                return self._commit(kind, asset_id, path)
            except UploadExpiredError as e:
                self._discard(kind, asset_id)
                if attempt == RESERVE_ATTEMPTS:
                    raise
                logger.warning("%s: %s; restarting from reserve", local_file.file_name, e)
            except (MediaError, OSError):
                # leave no half-uploaded item behind in the set
                self._discard(kind, asset_id)
                raise
        raise MediaUploadError(f"Upload of '{path}' did not complete.")

    def _commit(self, kind: AssetKind, asset_id: str, path: Path) -> RemoteAsset:
        checksum = md5_hex(path)
        try:
            asset = self._with_retry(
                self.api.commit_asset, kind, asset_id, checksum, uploaded=True
            )
        except ApiError as e:
            if e.status in COMMIT_REJECTED_STATUSES:
                raise IntegrityError(str(path), checksum, str(e)) from e
            raise
        if asset.state is AssetState.FAILED and any(
            "checksum" in err.lower() for err in asset.errors
        ):
            raise IntegrityError(str(path), checksum, "; ".join(asset.errors))
        return asset

    def _clear_set(self, remote_set: RemoteAssetSet):
        for item in list(remote_set.items):
            try:
                self._with_retry(self.api.delete_asset, remote_set.kind, item.id)
            except MediaError as e:
                raise ReplaceError(
                    f"Could not delete existing {remote_set.kind.value} '{item.file_name}': {e}"
                ) from e
            remote_set.items.remove(item)
        logger.info("  Deleted existing %ss in %s", remote_set.kind.value, _set_label(remote_set))

    def _upload_group(
        self,
        version_id: str,
        sets: list[RemoteAssetSet],
        files: list[LocalAssetFile],
        replace: bool,
        summary: RunSummary,
    ):
        first = files[0]
        label = f"{first.group} ({first.kind.value}s)"
        try:
            remote = self.resolve_set(
                version_id, sets, first.locale, first.display_type, first.kind
            )
            if replace and remote.items:
                self._clear_set(remote)
        except MediaError as e:
            summary.record_failure(label, e, count=len(files))
            return

        uploaded: list[RemoteAsset] = []
        for i, f in enumerate(files, 1):
            logger.info("  %s %d/%d: %s", first.kind.value.title(), i, len(files), f.file_name)
            try:
                asset = self.upload_file(f, remote.id)
            except (MediaError, OSError) as e:
                summary.record_failure(str(f.path), e)
                continue
            uploaded.append(asset)
            summary.succeeded += 1
            summary.assets.append(asset)

        if not uploaded:
            if remote.id in self._created_set_ids and not remote.items:
                self._drop_empty_set(sets, remote)
            return
        remote.items.extend(uploaded)
        try:
            self.reorder(remote.kind, remote.id, remote.item_ids)
        except MediaError as e:
            summary.record_failure(f"{label} reorder", e)

    def _drop_empty_set(self, sets: list[RemoteAssetSet], remote: RemoteAssetSet):
        """Remove a set this run created when nothing could be uploaded into it."""
        try:
            self._with_retry(self.api.delete_set, remote.kind, remote.id)
        except MediaError as e:
            logger.warning("Could not remove empty %s set %s: %s", remote.kind.value, remote.id, e)
            return
        self._created_set_ids.discard(remote.id)
        if remote in sets:
            sets.remove(remote)
        logger.info("  Removed empty %s set for %s", remote.kind.value, remote.display_type)

    def upload(
        self,
        root: str | Path,
        version_id: str,
        replace: bool = False,
        plan: Optional[MediaPlan] = None,
    ) -> RunSummary:
        """
        Upload every file found under `root` to the version's sets.

        With `replace`, each matching set is emptied before its first
        reservation; a failed deletion fails that set's files.
        """
        plan = plan or scan_media_folder(root)
        summary = RunSummary(skipped=plan.skipped)
        if plan.is_empty:
            return summary

        sets = self.api.list_sets(version_id)
        for (locale, display_type), files in sorted(plan.groups.items()):
            logger.info("[%s] %s:", locale, display_type)
            for kind in AssetKind:
                group = [f for f in files if f.kind is kind]
                if group:
                    self._upload_group(version_id, sets, group, replace, summary)
        return summary

    # Reorder

    def _lock_for(self, set_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._reorder_locks.setdefault(set_id, threading.Lock())

    def reorder(self, kind: AssetKind, set_id: str, asset_ids: list[str]):
        """Replace a set's item order. Calls for the same set never overlap."""
        with self._lock_for(set_id):
            self._with_retry(self.api.reorder_set, kind, set_id, asset_ids)

    # Download

    def download_asset(self, asset: RemoteAsset, folder: Path, position: int) -> Path:
        dest = folder / download_file_name(asset, position)
        data = self._with_retry(self.api.fetch_bytes, resolve_delivery_url(asset))
        tmp = dest.with_name(f".{dest.name}.part")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, dest)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        return dest

    def download(self, root: str | Path, version_id: str) -> RunSummary:
        """Write every remote asset to <root>/<locale>/<displayType>/NN_<name>."""
        root = expand_path(root)
        summary = RunSummary()
        for s in sorted(self.api.list_sets(version_id), key=_set_sort_key):
            if not s.items:
                continue
            folder = root / s.locale / s.display_type
            try:
                folder.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                summary.record_failure(_set_label(s), e, count=len(s.items))
                continue
            logger.info("%s:", _set_label(s))
            for i, asset in enumerate(s.items, 1):
                try:
                    dest = self.download_asset(asset, folder, i)
                except (MediaError, OSError) as e:
                    summary.record_failure(f"{s.locale}/{s.display_type} #{i}", e)
                    continue
                logger.info("  %d/%d: %s", i, len(s.items), dest.name)
                summary.succeeded += 1
        return summary

    # Verify & repair

    def verify(self, version_id: str) -> VerifyReport:
        """Fetch the state of every asset of a version. Read-only."""
        return VerifyReport(version_id=version_id, sets=self.api.list_sets(version_id))

    def _repair_set(
        self,
        remote_set: RemoteAssetSet,
        targets: list[MediaItemStatus],
        plan: MediaPlan,
        summary: RunSummary,
    ):
        local = plan.group_files(remote_set.locale, remote_set.display_type, remote_set.kind)
        if len(local) != len(remote_set.items):
            error = CardinalityMismatch(
                f"{remote_set.locale}/{remote_set.display_type}",
                len(local),
                len(remote_set.items),
            )
            summary.record_failure(_set_label(remote_set), error, count=len(targets))
            return

        order = remote_set.item_ids
        changed = False
        for item in targets:
            local_file = local[item.position - 1]
            label = f"{_set_label(remote_set)} #{item.position}"
            try:
                self._with_retry(self.api.delete_asset, remote_set.kind, item.asset.id)
            except MediaError as e:
                summary.record_failure(label, e)
                continue
            changed = True
            try:
                new_asset = self.upload_file(local_file, remote_set.id)
            except (MediaError, OSError) as e:
                order.remove(item.asset.id)
                summary.record_failure(label, e)
                continue
            order[order.index(item.asset.id)] = new_asset.id
            logger.info("%s: re-uploaded %s", label, local_file.file_name)
            summary.succeeded += 1
            summary.assets.append(new_asset)

        if changed:
            try:
                self.reorder(remote_set.kind, remote_set.id, order)
            except MediaError as e:
                summary.record_failure(f"{_set_label(remote_set)} reorder", e)

    def repair(
        self,
        report: VerifyReport,
        root: str | Path,
        include_failed: bool = False,
        plan: Optional[MediaPlan] = None,
    ) -> RunSummary:
        """
        Delete each stuck asset and re-upload the local file at the same
        alphabetical position, then restore the set's order.
        """
        plan = plan or scan_media_folder(root)
        summary = RunSummary()
        for remote_set in sorted(report.sets, key=_set_sort_key):
            targets = [
                i
                for i in report.items(remote_set)
                if i.is_stuck or (include_failed and i.is_failed)
            ]
            if targets:
                self._repair_set(remote_set, targets, plan, summary)
        return summary

    # Polling

    def await_processing(
        self,
        kind: AssetKind,
        asset_id: str,
        interval: float = 10.0,
        timeout: float = 600.0,
    ) -> PollResult:
        """Poll an asset until it completes, fails or `timeout` seconds pass."""
        deadline = self._clock() + timeout
        while True:
            asset = self._with_retry(self.api.get_asset, kind, asset_id)
            if asset.state is AssetState.COMPLETE:
                return PollResult(PollOutcome.COMPLETE, asset)
            if asset.state is AssetState.FAILED:
                return PollResult(PollOutcome.FAILED, asset)
            if self._clock() + interval > deadline:
                return PollResult(PollOutcome.TIMED_OUT, asset)
            self._sleep(interval)

    def await_assets(
        self, assets: list[RemoteAsset], interval: float = 10.0, timeout: float = 600.0
    ) -> dict[str, PollResult]:
        """Poll several assets against one shared deadline."""
        deadline = self._clock() + timeout
        results: dict[str, PollResult] = {}
        for asset in assets:
            remaining = max(0.0, deadline - self._clock())
            results[asset.id] = self.await_processing(
                asset.kind, asset.id, interval=interval, timeout=remaining
            )
        return results
