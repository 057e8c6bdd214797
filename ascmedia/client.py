# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""App Store Connect media API client."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Any, Optional

import jwt
import requests

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.appstoreconnect.apple.com/"
TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_REFRESH_MARGIN_SECS = 60
SET_PAGE_LIMIT = 50
ITEM_PAGE_LIMIT = 200


# --- Auth & Config ---


@dataclass
class ApiAuth:
    """API key credentials used to sign bearer tokens."""

    key_id: str
    issuer_id: str
    private_key: str = field(repr=False, default="")
    endpoint: Optional[str] = None
    io_timeout_secs: int = 60
    token_ttl_secs: int = 20 * 60

    @classmethod
    def with_endpoint(
        cls,
        endpoint: str,
        key_id: str,
        issuer_id: str,
        private_key: str,
        io_timeout_secs: int = 60,
    ) -> ApiAuth:
        if endpoint and not endpoint.endswith("/"):
            endpoint += "/"
        return cls(
            key_id=key_id,
            issuer_id=issuer_id,
            private_key=private_key,
            endpoint=endpoint,
            io_timeout_secs=io_timeout_secs,
        )

    def make_token(self, now: Optional[float] = None) -> tuple[str, float]:
        """Return a signed ES256 token and its expiry timestamp."""
        issued = int(now if now is not None else time.time())
        expires = issued + self.token_ttl_secs
        token = jwt.encode(
            {
                "iss": self.issuer_id,
                "iat": issued,
                "exp": expires,
                "aud": TOKEN_AUDIENCE,
            },
            self.private_key,
            algorithm="ES256",
            headers={"kid": self.key_id},
        )
        return token, float(expires)


# --- Data Classes ---


class AssetKind(Enum):
    SCREENSHOT = "screenshot"
    PREVIEW = "preview"

    @property
    def resource(self) -> str:
        return "appScreenshots" if self is AssetKind.SCREENSHOT else "appPreviews"

    @property
    def set_resource(self) -> str:
        return (
            "appScreenshotSets" if self is AssetKind.SCREENSHOT else "appPreviewSets"
        )

    @property
    def set_relationship(self) -> str:
        return "appScreenshotSet" if self is AssetKind.SCREENSHOT else "appPreviewSet"

    @property
    def type_attribute(self) -> str:
        return (
            "screenshotDisplayType" if self is AssetKind.SCREENSHOT else "previewType"
        )

    def remote_type(self, display_type: str) -> str:
        """Map a display-type folder name to the set's remote type value."""
        if self is AssetKind.PREVIEW and display_type.startswith("APP_"):
            return display_type[4:]
        return display_type

    def folder_name(self, remote_type: str) -> str:
        """Map a set's remote type value back to its display-type folder name."""
        if self is AssetKind.PREVIEW:
            return f"APP_{remote_type}"
        return remote_type


class AssetState(Enum):
    AWAITING_UPLOAD = "AWAITING_UPLOAD"
    UPLOAD_COMPLETE = "UPLOAD_COMPLETE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_api(cls, value: Optional[str]) -> AssetState:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_stuck(self) -> bool:
        """Neither finished nor terminally failed."""
        return self not in (AssetState.COMPLETE, AssetState.FAILED)


@dataclass
class UploadOperation:
    """One presigned byte-range transfer."""

    method: str
    url: str
    offset: int
    length: int
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> UploadOperation:
        method, url = d.get("method"), d.get("url")
        offset, length = d.get("offset"), d.get("length")
        if not method or not url or offset is None or length is None:
            raise MediaUploadError("Upload operation missing required fields.")
        headers = {
            h["name"]: h["value"]
            for h in d.get("requestHeaders") or []
            if h.get("name") and h.get("value") is not None
        }
        return cls(
            method=method, url=url, offset=int(offset), length=int(length), headers=headers
        )


@dataclass
class RemoteAsset:
    """A screenshot or preview as reported by the API."""

    id: str
    kind: AssetKind
    file_name: str = ""
    file_size: int = 0
    checksum: Optional[str] = None
    state: AssetState = AssetState.UNKNOWN
    errors: list[str] = field(default_factory=list)
    template_url: Optional[str] = None
    width: int = 0
    height: int = 0
    video_url: Optional[str] = None
    upload_operations: list[UploadOperation] = field(default_factory=list)

    @property
    def delivery_descriptor(self) -> Optional[str]:
        if self.kind is AssetKind.PREVIEW:
            return self.video_url
        return self.template_url

    @classmethod
    def from_resource(cls, kind: AssetKind, d: dict) -> RemoteAsset:
        attrs = d.get("attributes") or {}
        delivery = attrs.get("assetDeliveryState") or {}
        image = attrs.get("imageAsset") or {}
        ops = attrs.get("uploadOperations") or []
        return cls(
            id=d["id"],
            kind=kind,
            file_name=attrs.get("fileName") or "",
            file_size=attrs.get("fileSize") or 0,
            checksum=attrs.get("sourceFileChecksum"),
            state=AssetState.from_api(delivery.get("state")),
            errors=[
                e.get("description") or e.get("code") or ""
                for e in delivery.get("errors") or []
            ],
            template_url=image.get("templateUrl"),
            width=image.get("width") or 0,
            height=image.get("height") or 0,
            video_url=attrs.get("videoUrl"),
            upload_operations=[UploadOperation.from_dict(op) for op in ops],
        )


@dataclass
class RemoteAssetSet:
    """All screenshots or all previews of one locale/display-type pair."""

    id: str
    kind: AssetKind
    locale: str
    display_type: str
    localization_id: str = ""
    items: list[RemoteAsset] = field(default_factory=list)

    @property
    def item_ids(self) -> list[str]:
        return [item.id for item in self.items]

    @property
    def state(self) -> AssetState:
        """Least advanced state of the set's items."""
        states = {item.state for item in self.items}
        for state in (
            AssetState.FAILED,
            AssetState.UNKNOWN,
            AssetState.AWAITING_UPLOAD,
            AssetState.UPLOAD_COMPLETE,
        ):
            if state in states:
                return state
        return AssetState.COMPLETE


def media_mime_type(file_name: str) -> str:
    ext = PurePath(file_name).suffix.lower()
    if ext == ".mp4":
        return "video/mp4"
    if ext == ".mov":
        return "video/quicktime"
    return "application/octet-stream"


# --- Exceptions ---


class MediaError(Exception):
    pass


class TransportError(MediaError):
    """Network failure or server-side error; retryable."""


class UploadExpiredError(TransportError):
    """A presigned upload URL was refused; the upload must restart from reserve."""


class ApiError(MediaError):
    def __init__(self, status: int, errors: Optional[list[str]] = None):
        self.status, self.errors = status, errors or []
        detail = "; ".join(self.errors) or "no details"
        super().__init__(f"API request failed with status {status}: {detail}")


class NotFoundError(ApiError):
    pass


class ReserveError(ApiError):
    pass


class IntegrityError(MediaError):
    def __init__(self, path: str, checksum: str, reason: str = ""):
        self.path, self.checksum = path, checksum
        msg = f"Checksum {checksum} rejected for '{path}'"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class MediaUploadError(MediaError):
    def __init__(self, message: str, asset_id: Optional[str] = None):
        # set when the asset was already reserved remotely
        self.asset_id = asset_id
        super().__init__(message)


class ReplaceError(MediaError):
    pass


class CardinalityMismatch(MediaError):
    def __init__(self, group: str, local_count: int, remote_count: int):
        self.group = group
        self.local_count, self.remote_count = local_count, remote_count
        super().__init__(
            f"[{group}] {local_count} local file(s) but {remote_count} remote item(s); "
            "refusing to match by position"
        )


def _error_details(resp: requests.Response) -> list[str]:
    try:
        body = resp.json()
    except ValueError:
        return [resp.text[:200]] if resp.text else []
    if not isinstance(body, dict):
        return []
    return [
        e.get("detail") or e.get("title") or e.get("code") or ""
        for e in body.get("errors") or []
    ]


# --- API Interface ---


class MediaApiInterface(ABC):
    """Remote operations the media engine depends on."""

    @abstractmethod
    def list_sets(self, version_id: str) -> list[RemoteAssetSet]: ...
    @abstractmethod
    def create_set(
        self, version_id: str, locale: str, display_type: str, kind: AssetKind
    ) -> str: ...
    @abstractmethod
    def reserve_asset(
        self, set_id: str, kind: AssetKind, file_name: str, file_size: int
    ) -> tuple[str, list[UploadOperation]]: ...
    @abstractmethod
    def put_chunk(self, operation: UploadOperation, data: bytes) -> None: ...
    @abstractmethod
    def commit_asset(
        self, kind: AssetKind, asset_id: str, checksum: str, uploaded: bool = True
    ) -> RemoteAsset: ...
    @abstractmethod
    def get_asset(self, kind: AssetKind, asset_id: str) -> RemoteAsset: ...
    @abstractmethod
    def delete_asset(self, kind: AssetKind, asset_id: str) -> None: ...
    @abstractmethod
    def delete_set(self, kind: AssetKind, set_id: str) -> None: ...
    @abstractmethod
    def reorder_set(self, kind: AssetKind, set_id: str, asset_ids: list[str]) -> None: ...
    @abstractmethod
    def fetch_bytes(self, url: str) -> bytes: ...


# --- HTTP Client ---


class HttpApiClient(MediaApiInterface):
    """HTTP client for the media endpoints."""

    def __init__(self, auth: ApiAuth, session: Optional[requests.Session] = None):
        self.auth = auth
        self.endpoint = auth.endpoint or DEFAULT_ENDPOINT
        self.io_timeout = auth.io_timeout_secs
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None
        self._token_expiry = 0.0

    def close(self):
        if self._owns_session and self._session:
            self._session.close()
            self._session = None

    def __enter__(self) -> HttpApiClient:
        return self

    def __exit__(self, *exc):
        self.close()

    def _bearer(self) -> str:
        if self._token is None or time.time() > self._token_expiry - TOKEN_REFRESH_MARGIN_SECS:
            self._token, self._token_expiry = self.auth.make_token()
        return self._token

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.endpoint.rstrip('/')}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        url: str,
        *,
        authorized: bool = True,
        headers: Optional[dict] = None,
        **kwargs: Any,
    ) -> requests.Response:
        if self._session is None:
            self._session = requests.Session()

        headers = dict(headers or {})
        if authorized:
            headers["Authorization"] = f"Bearer {self._bearer()}"

        logger.debug("%s %s", method, url)
        try:
            return self._session.request(
                method, url, headers=headers, timeout=self.io_timeout, **kwargs
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def _request(
        self,
        method: str,
        path: str,
        data: Any = None,
        params: Optional[dict] = None,
    ) -> Any:
        headers = {"Content-Type": "application/json"} if data is not None else None
        resp = self._send(
            method, self._url(path), headers=headers, json=data, params=params
        )
        if resp.status_code == 404:
            raise NotFoundError(404, _error_details(resp))
        if resp.status_code >= 500:
            raise TransportError(
                f"{method} {path} failed with status {resp.status_code}"
            )
        if not resp.ok:
            raise ApiError(resp.status_code, _error_details(resp))
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def _get_all(self, path: str, params: Optional[dict] = None) -> list[dict]:
        """GET a collection, following `links.next` until exhausted."""
        out: list[dict] = []
        url: Optional[str] = path
        while url:
            page = self._request("GET", url, params=params) or {}
            out.extend(page.get("data") or [])
            url = (page.get("links") or {}).get("next")
            # the next link already carries the query string
            params = None
        return out

    # Lookups

    def list_localizations(self, version_id: str) -> dict[str, str]:
        """Return a locale -> localization id mapping for a version."""
        locs = self._get_all(
            f"v1/appStoreVersions/{version_id}/appStoreVersionLocalizations"
        )
        out: dict[str, str] = {}
        for loc in locs:
            locale = (loc.get("attributes") or {}).get("locale")
            if locale and locale not in out:
                out[locale] = loc["id"]
        return out

    def list_assets(self, kind: AssetKind, set_id: str) -> list[RemoteAsset]:
        return [
            RemoteAsset.from_resource(kind, d)
            for d in self._get_all(
                f"v1/{kind.set_resource}/{set_id}/{kind.resource}",
                {"limit": ITEM_PAGE_LIMIT},
            )
        ]

    # Protocol methods

    def list_sets(self, version_id: str) -> list[RemoteAssetSet]:
        sets: list[RemoteAssetSet] = []
        for locale, loc_id in self.list_localizations(version_id).items():
            for kind in AssetKind:
                try:
                    raw_sets = self._get_all(
                        f"v1/appStoreVersionLocalizations/{loc_id}/{kind.set_resource}",
                        {"limit": SET_PAGE_LIMIT},
                    )
                except NotFoundError:
                    logger.warning(
                        "[%s] localization %s disappeared while listing, skipping",
                        locale,
                        loc_id,
                    )
                    break
                for raw in raw_sets:
                    remote_type = (raw.get("attributes") or {}).get(kind.type_attribute)
                    if not remote_type:
                        continue
                    try:
                        items = self.list_assets(kind, raw["id"])
                    except NotFoundError:
                        logger.warning(
                            "[%s] %s set %s disappeared while listing, skipping",
                            locale,
                            kind.value,
                            raw["id"],
                        )
                        continue
                    sets.append(
                        RemoteAssetSet(
                            id=raw["id"],
                            kind=kind,
                            locale=locale,
                            display_type=kind.folder_name(remote_type),
                            localization_id=loc_id,
                            items=items,
                        )
                    )
        return sets

    def create_set(
        self, version_id: str, locale: str, display_type: str, kind: AssetKind
    ) -> str:
        loc_id = self.list_localizations(version_id).get(locale)
        if loc_id is None:
            raise NotFoundError(404, [f"Locale '{locale}' not found on this version."])
        resp = self._request(
            "POST",
            f"v1/{kind.set_resource}",
            {
                "data": {
                    "type": kind.set_resource,
                    "attributes": {kind.type_attribute: kind.remote_type(display_type)},
                    "relationships": {
                        "appStoreVersionLocalization": {
                            "data": {"type": "appStoreVersionLocalizations", "id": loc_id}
                        }
                    },
                }
            },
        )
        return resp["data"]["id"]

    def reserve_asset(
        self, set_id: str, kind: AssetKind, file_name: str, file_size: int
    ) -> tuple[str, list[UploadOperation]]:
        attributes: dict[str, Any] = {"fileName": file_name, "fileSize": file_size}
        if kind is AssetKind.PREVIEW:
            attributes["mimeType"] = media_mime_type(file_name)
        resp = self._request(
            "POST",
            f"v1/{kind.resource}",
            {
                "data": {
                    "type": kind.resource,
                    "attributes": attributes,
                    "relationships": {
                        kind.set_relationship: {
                            "data": {"type": kind.set_resource, "id": set_id}
                        }
                    },
                }
            },
        )
        asset_id = resp["data"]["id"]
        try:
            asset = RemoteAsset.from_resource(kind, resp["data"])
        except MediaUploadError as e:
            raise MediaUploadError(str(e), asset_id=asset_id) from e
        return asset_id, asset.upload_operations

    def put_chunk(self, operation: UploadOperation, data: bytes) -> None:
        resp = self._send(
            operation.method,
            operation.url,
            authorized=False,
            headers=operation.headers,
            data=data,
        )
        if resp.status_code == 403:
            raise UploadExpiredError(
                f"Upload URL refused (status 403) for range {operation.offset}+{operation.length}"
            )
        if not 200 <= resp.status_code < 300:
            raise TransportError(f"Chunk upload failed with status {resp.status_code}.")

    def commit_asset(
        self, kind: AssetKind, asset_id: str, checksum: str, uploaded: bool = True
    ) -> RemoteAsset:
        resp = self._request(
            "PATCH",
            f"v1/{kind.resource}/{asset_id}",
            {
                "data": {
                    "type": kind.resource,
                    "id": asset_id,
                    "attributes": {"sourceFileChecksum": checksum, "uploaded": uploaded},
                }
            },
        )
        return RemoteAsset.from_resource(kind, resp["data"])

    def get_asset(self, kind: AssetKind, asset_id: str) -> RemoteAsset:
        resp = self._request("GET", f"v1/{kind.resource}/{asset_id}")
        return RemoteAsset.from_resource(kind, resp["data"])

    def delete_asset(self, kind: AssetKind, asset_id: str) -> None:
        self._request("DELETE", f"v1/{kind.resource}/{asset_id}")

    def delete_set(self, kind: AssetKind, set_id: str) -> None:
        self._request("DELETE", f"v1/{kind.set_resource}/{set_id}")

    def reorder_set(self, kind: AssetKind, set_id: str, asset_ids: list[str]) -> None:
        self._request(
            "PATCH",
            f"v1/{kind.set_resource}/{set_id}/relationships/{kind.resource}",
            {"data": [{"type": kind.resource, "id": i} for i in asset_ids]},
        )

    def fetch_bytes(self, url: str) -> bytes:
        resp = self._send("GET", url, authorized=False)
        if resp.status_code == 404:
            raise NotFoundError(404, [f"Nothing at {url}"])
        if not resp.ok:
            raise TransportError(f"GET {url} failed with status {resp.status_code}")
        return resp.content
