# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
ascmedia - screenshot and app preview sync for App Store Connect.

Uploads a local folder laid out as <locale>/<displayType>/<files> into the
screenshot and preview sets of an App Store version, downloads those sets
back into the same layout, and verifies/repairs items stuck in processing.

Usage:
    from ascmedia import Config, MediaSyncClient

    media = MediaSyncClient.from_auth(Config.load().to_auth())
    summary = media.upload("~/media", version_id, replace=True)

    report = media.verify(version_id)
    if report.stuck:
        media.repair(report, "~/media")
    media.close()
"""

from .client import (
    # Auth & Config
    ApiAuth,
    DEFAULT_ENDPOINT,
    # Data structures
    AssetKind,
    AssetState,
    UploadOperation,
    RemoteAsset,
    RemoteAssetSet,
    # Exceptions
    MediaError,
    TransportError,
    UploadExpiredError,
    ApiError,
    NotFoundError,
    ReserveError,
    IntegrityError,
    MediaUploadError,
    ReplaceError,
    CardinalityMismatch,
    # Clients
    MediaApiInterface,
    HttpApiClient,
)
from .config import Config, ConfigError
from .folder import LocalAssetFile, MediaPlan, ScanWarning, scan_media_folder
from .media import (
    MediaItemStatus,
    MediaSyncClient,
    PollOutcome,
    PollResult,
    RunSummary,
    VerifyReport,
    resolve_image_url,
)

__all__ = [
    "ApiAuth",
    "DEFAULT_ENDPOINT",
    "Config",
    "ConfigError",
    "AssetKind",
    "AssetState",
    "UploadOperation",
    "RemoteAsset",
    "RemoteAssetSet",
    "LocalAssetFile",
    "MediaPlan",
    "ScanWarning",
    "scan_media_folder",
    "MediaError",
    "TransportError",
    "UploadExpiredError",
    "ApiError",
    "NotFoundError",
    "ReserveError",
    "IntegrityError",
    "MediaUploadError",
    "ReplaceError",
    "CardinalityMismatch",
    "MediaApiInterface",
    "HttpApiClient",
    "MediaSyncClient",
    "MediaItemStatus",
    "PollOutcome",
    "PollResult",
    "RunSummary",
    "VerifyReport",
    "resolve_image_url",
]

__version__ = "1.0.0"
