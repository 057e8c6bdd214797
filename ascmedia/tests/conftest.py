# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared test utilities: an in-memory media API and folder builders.
"""

import copy
import hashlib
import itertools
import os
from pathlib import Path
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .. import (
    ApiError,
    AssetKind,
    AssetState,
    Config,
    MediaApiInterface,
    MediaSyncClient,
    MediaUploadError,
    NotFoundError,
    RemoteAsset,
    RemoteAssetSet,
    TransportError,
    UploadExpiredError,
    UploadOperation,
)

# Live configuration (can be overridden via environment variables)
LIVE_VERSION_ID = os.getenv("ASC_VERSION_ID")
LIVE_LOCALE = os.getenv("ASC_LOCALE", "en-US")

SCREENSHOT_WIDTH, SCREENSHOT_HEIGHT = 1290, 2796
CDN = "https://cdn.example.test"
UPLOADS = "https://upload.example.test"


class FakeMediaApi(MediaApiInterface):
    """In-memory stand-in for the remote media API."""

    def __init__(self, locales=("en-US",), chunk_size: int = 4):
        self.locales = list(locales)
        self.chunk_size = chunk_size
        self.sets: dict[str, RemoteAssetSet] = {}
        self.assets: dict[str, RemoteAsset] = {}
        self.blobs: dict[str, bytearray] = {}
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)

        # failure injection
        self.chunk_failures = 0
        self.expired_chunks = 0
        self.reserve_error: Optional[ApiError] = None
        self.commit_error: Optional[ApiError] = None
        self.fail_delete: set[str] = set()
        self.fail_fetch: set[str] = set()
        self.fail_reorder = False
        self.state_after_commit = AssetState.COMPLETE
        self.state_script: dict[str, list[AssetState]] = {}
        # operation name -> number of TransportErrors to raise before succeeding
        self.transient: dict[str, int] = {}
        self.bad_operations: set[str] = set()

    def _flaky(self, name: str):
        if self.transient.get(name, 0) > 0:
            self.transient[name] -= 1
            raise TransportError(f"{name}: 503 Service Unavailable")

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _set_of(self, asset_id: str) -> RemoteAssetSet:
        for s in self.sets.values():
            if asset_id in s.item_ids:
                return s
        raise NotFoundError(404, [f"asset {asset_id}"])

    def _deliver(self, asset: RemoteAsset):
        if asset.kind is AssetKind.SCREENSHOT:
            asset.template_url = f"{CDN}/{asset.id}/{{w}}x{{h}}bb.{{f}}"
            asset.width, asset.height = SCREENSHOT_WIDTH, SCREENSHOT_HEIGHT
        else:
            asset.video_url = f"{CDN}/{asset.id}/video.mp4"

    def add_set(
        self,
        locale: str,
        display_type: str,
        kind: AssetKind = AssetKind.SCREENSHOT,
        items: tuple = (),
    ) -> RemoteAssetSet:
        """Seed a set; items are (file_name, state) or (file_name, state, content)."""
        s = RemoteAssetSet(
            id=self._new_id("set"), kind=kind, locale=locale, display_type=display_type
        )
        for item in items:
            name, state = item[0], item[1]
            content = item[2] if len(item) > 2 else f"seed {name}".encode()
            asset = RemoteAsset(
                id=self._new_id("asset"),
                kind=kind,
                file_name=name,
                file_size=len(content),
                checksum=hashlib.md5(content).hexdigest(),
                state=state,
            )
            self._deliver(asset)
            self.assets[asset.id] = asset
            self.blobs[asset.id] = bytearray(content)
            s.items.append(asset)
        self.sets[s.id] = s
        return s

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] not in ("list_sets", "get_asset", "fetch_bytes")]

    # MediaApiInterface

    def list_sets(self, version_id: str) -> list[RemoteAssetSet]:
        self.calls.append(("list_sets", version_id))
        return copy.deepcopy(list(self.sets.values()))

    def create_set(self, version_id, locale, display_type, kind) -> str:
        self.calls.append(("create_set", locale, display_type, kind))
        if locale not in self.locales:
            raise NotFoundError(404, [f"Locale '{locale}' not found on this version."])
        return self.add_set(locale, display_type, kind).id

    def reserve_asset(self, set_id, kind, file_name, file_size):
        self.calls.append(("reserve_asset", set_id, file_name))
        self._flaky("reserve_asset")
        if self.reserve_error is not None:
            raise self.reserve_error
        if set_id not in self.sets:
            raise NotFoundError(404, [f"set {set_id}"])
        asset = RemoteAsset(
            id=self._new_id("asset"),
            kind=kind,
            file_name=file_name,
            file_size=file_size,
            state=AssetState.AWAITING_UPLOAD,
        )
        self.assets[asset.id] = asset
        self.blobs[asset.id] = bytearray(file_size)
        # newest first, so callers must reorder
        self.sets[set_id].items.insert(0, asset)
        if file_name in self.bad_operations:
            raise MediaUploadError(
                "Upload operation missing required fields.", asset_id=asset.id
            )
        ops = [
            UploadOperation(
                method="PUT",
                url=f"{UPLOADS}/{asset.id}/{offset}",
                offset=offset,
                length=min(self.chunk_size, file_size - offset),
                headers={"Content-Type": "application/octet-stream"},
            )
            for offset in range(0, file_size, self.chunk_size)
        ]
        return asset.id, ops

    def put_chunk(self, operation: UploadOperation, data: bytes) -> None:
        self.calls.append(("put_chunk", operation.url))
        if self.expired_chunks > 0:
            self.expired_chunks -= 1
            raise UploadExpiredError("Upload URL refused (status 403)")
        if self.chunk_failures > 0:
            self.chunk_failures -= 1
            raise TransportError("connection reset")
        asset_id = operation.url.split("/")[-2]
        self.blobs[asset_id][operation.offset : operation.offset + len(data)] = data

    def commit_asset(self, kind, asset_id, checksum, uploaded=True) -> RemoteAsset:
        self.calls.append(("commit_asset", asset_id, checksum))
        self._flaky("commit_asset")
        if self.commit_error is not None:
            raise self.commit_error
        if hashlib.md5(self.blobs[asset_id]).hexdigest() != checksum:
            raise ApiError(409, ["The checksum does not match the uploaded file."])
        asset = self.assets[asset_id]
        asset.checksum = checksum
        asset.state = self.state_after_commit
        self._deliver(asset)
        return copy.deepcopy(asset)

    def get_asset(self, kind, asset_id) -> RemoteAsset:
        self.calls.append(("get_asset", asset_id))
        self._flaky("get_asset")
        asset = self.assets[asset_id]
        script = self.state_script.get(asset_id)
        if script:
            asset.state = script.pop(0)
        return copy.deepcopy(asset)

    def delete_asset(self, kind, asset_id) -> None:
        self.calls.append(("delete_asset", asset_id))
        self._flaky("delete_asset")
        if asset_id in self.fail_delete:
            raise TransportError("connection reset")
        s = self._set_of(asset_id)
        s.items = [a for a in s.items if a.id != asset_id]
        del self.assets[asset_id]

    def delete_set(self, kind, set_id) -> None:
        self.calls.append(("delete_set", set_id))
        self._flaky("delete_set")
        for asset_id in self.sets.pop(set_id).item_ids:
            del self.assets[asset_id]

    def reorder_set(self, kind, set_id, asset_ids) -> None:
        self.calls.append(("reorder_set", set_id, list(asset_ids)))
        self._flaky("reorder_set")
        if self.fail_reorder:
            raise ApiError(409, ["reorder rejected"])
        s = self.sets[set_id]
        if sorted(asset_ids) != sorted(s.item_ids):
            raise ApiError(409, ["Relationship must list every item of the set."])
        s.items = [self.assets[i] for i in asset_ids]

    def fetch_bytes(self, url: str) -> bytes:
        self.calls.append(("fetch_bytes", url))
        self._flaky("fetch_bytes")
        asset_id = url[len(CDN) + 1 :].split("/")[0]
        if asset_id in self.fail_fetch:
            raise TransportError(f"GET {url} failed with status 500")
        return bytes(self.blobs[asset_id])

    # Inspection helpers

    def set_for(self, locale, display_type, kind=AssetKind.SCREENSHOT) -> RemoteAssetSet:
        for s in self.sets.values():
            if (s.locale, s.display_type, s.kind) == (locale, display_type, kind):
                return s
        raise KeyError((locale, display_type, kind))

    def names(self, locale, display_type, kind=AssetKind.SCREENSHOT) -> list[str]:
        return [a.file_name for a in self.set_for(locale, display_type, kind).items]


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def make_tree(root: Path, files: dict[str, bytes]) -> Path:
    """Create files given as {'en-US/APP_IPHONE_67/a.png': b'...'}."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


@pytest.fixture
def api() -> FakeMediaApi:
    return FakeMediaApi()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def media(api, clock) -> MediaSyncClient:
    return MediaSyncClient(api, max_workers=1, retry_delay=0, sleep=clock.sleep, clock=clock)


@pytest.fixture
def private_key_pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def live_media() -> Optional[MediaSyncClient]:
    """Client for the real API from stored credentials, or None."""
    try:
        media = MediaSyncClient.from_auth(Config.load().to_auth())
        print(f"  Using key {media.api.auth.key_id}")
        return media
    except Exception as e:
        print(f"  Could not load credentials: {type(e).__name__}: {e}")
        return None
