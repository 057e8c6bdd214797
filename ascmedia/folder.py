# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Local media folder scanning.

The folder layout is fixed at two levels beneath the root:

    <root>/<locale>/<displayType>/<filename>

Files at any other depth are ignored. Each file is classified by extension
into a screenshot or an app preview, and numbered by its alphabetical
position within its locale/display-type/kind group.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .client import AssetKind

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg"})
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov"})

PREVIEW_TYPES = frozenset(
    {
        "IPHONE_67",
        "IPHONE_61",
        "IPHONE_65",
        "IPHONE_58",
        "IPHONE_55",
        "IPHONE_47",
        "IPHONE_40",
        "IPHONE_35",
        "IPAD_PRO_3GEN_129",
        "IPAD_PRO_3GEN_11",
        "IPAD_PRO_129",
        "IPAD_105",
        "IPAD_97",
        "DESKTOP",
        "APPLE_TV",
        "APPLE_VISION_PRO",
    }
)

SCREENSHOT_DISPLAY_TYPES = frozenset(
    {f"APP_{t}" for t in PREVIEW_TYPES}
    | {
        "APP_WATCH_ULTRA",
        "APP_WATCH_SERIES_10",
        "APP_WATCH_SERIES_7",
        "APP_WATCH_SERIES_4",
        "APP_WATCH_SERIES_3",
        "IMESSAGE_APP_IPHONE_67",
        "IMESSAGE_APP_IPHONE_61",
        "IMESSAGE_APP_IPHONE_65",
        "IMESSAGE_APP_IPHONE_58",
        "IMESSAGE_APP_IPHONE_55",
        "IMESSAGE_APP_IPHONE_47",
        "IMESSAGE_APP_IPHONE_40",
        "IMESSAGE_APP_IPAD_PRO_3GEN_129",
        "IMESSAGE_APP_IPAD_PRO_3GEN_11",
        "IMESSAGE_APP_IPAD_PRO_129",
        "IMESSAGE_APP_IPAD_105",
        "IMESSAGE_APP_IPAD_97",
    }
)

SCREENSHOT_ONLY_PREFIXES = ("APP_WATCH_", "IMESSAGE_")


def preview_type_for_display_type(display_type: str) -> Optional[str]:
    """Preview type matching a display-type folder, or None if screenshot-only."""
    if display_type.startswith(SCREENSHOT_ONLY_PREFIXES):
        return None
    if not display_type.startswith("APP_"):
        return None
    preview_type = display_type[4:]
    return preview_type if preview_type in PREVIEW_TYPES else None


def classify_file(
    file_name: str, display_type: str
) -> tuple[Optional[AssetKind], Optional[str]]:
    """
    Classify a file by extension within a display-type folder.

    Returns (kind, None) for a usable file, or (None, reason) when the file
    must be skipped.
    """
    ext = os.path.splitext(file_name)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return AssetKind.SCREENSHOT, None
    if ext in VIDEO_EXTENSIONS:
        if preview_type_for_display_type(display_type) is None:
            return None, "no preview support for this display type"
        return AssetKind.PREVIEW, None
    return None, "unsupported file type"


def expand_path(path: str | Path) -> Path:
    """Clean up a pasted path: strip quotes and backslash escapes, expand ~."""
    cleaned = str(path).strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "'\"":
        cleaned = cleaned[1:-1]
    cleaned = cleaned.replace("\\ ", " ")
    return Path(cleaned).expanduser()


# --- Data Classes ---


@dataclass(frozen=True)
class LocalAssetFile:
    """A media file found in the local folder."""

    path: Path
    locale: str
    display_type: str
    kind: AssetKind
    position: int  # 1-based within (locale, display_type, kind)

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def file_size(self) -> int:
        return self.path.stat().st_size

    @property
    def group(self) -> str:
        return f"{self.locale}/{self.display_type}"


@dataclass
class ScanWarning:
    """A file or folder skipped by the scanner. Never fatal."""

    message: str
    locale: str = ""
    display_type: str = ""
    file_name: str = ""

    def __str__(self) -> str:
        where = "/".join(p for p in (self.locale, self.display_type) if p)
        prefix = f"[{where}] " if where else ""
        if self.file_name:
            return f"{prefix}Skipping '{self.file_name}': {self.message}."
        return f"{prefix}{self.message}."


@dataclass
class MediaPlan:
    """Result of scanning a media folder."""

    root: Path
    groups: dict[tuple[str, str], list[LocalAssetFile]] = field(default_factory=dict)
    warnings: list[ScanWarning] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.groups

    @property
    def locales(self) -> list[str]:
        return sorted({locale for locale, _ in self.groups})

    def files(self, kind: Optional[AssetKind] = None) -> list[LocalAssetFile]:
        return [
            f
            for key in sorted(self.groups)
            for f in self.groups[key]
            if kind is None or f.kind is kind
        ]

    @property
    def total_screenshots(self) -> int:
        return len(self.files(AssetKind.SCREENSHOT))

    @property
    def total_previews(self) -> int:
        return len(self.files(AssetKind.PREVIEW))

    @property
    def skipped(self) -> int:
        return sum(1 for w in self.warnings if w.file_name)

    def group_files(
        self, locale: str, display_type: str, kind: AssetKind
    ) -> list[LocalAssetFile]:
        return [f for f in self.groups.get((locale, display_type), []) if f.kind is kind]

    def find(
        self, locale: str, display_type: str, kind: AssetKind, position: int
    ) -> Optional[LocalAssetFile]:
        for f in self.group_files(locale, display_type, kind):
            if f.position == position:
                return f
        return None


# --- Scanning ---


def _sorted_dirs(path: Path) -> list[Path]:
    return sorted(
        (p for p in path.iterdir() if p.is_dir() and not p.name.startswith(".")),
        key=lambda p: p.name,
    )


def scan_media_folder(root: str | Path) -> MediaPlan:
    """
    Scan `root` and return a MediaPlan.

    Never raises for an empty or unrecognised folder; problems are recorded
    as warnings and the caller decides whether an empty plan is fatal.
    """
    root = expand_path(root)
    plan = MediaPlan(root=root)

    if not root.is_dir():
        plan.warnings.append(ScanWarning(f"Folder not found at '{root}'"))
        logger.warning("Folder not found at '%s'", root)
        return plan

    for locale_dir in _sorted_dirs(root):
        locale = locale_dir.name
        for dt_dir in _sorted_dirs(locale_dir):
            display_type = dt_dir.name
            if display_type not in SCREENSHOT_DISPLAY_TYPES:
                plan.warnings.append(
                    ScanWarning(
                        f"Skipping unknown display type '{display_type}'", locale=locale
                    )
                )
                continue

            files: list[LocalAssetFile] = []
            positions = {kind: 0 for kind in AssetKind}
            for name in sorted(p.name for p in dt_dir.iterdir() if p.is_file()):
                if name.startswith("."):
                    continue
                kind, reason = classify_file(name, display_type)
                if kind is None:
                    plan.warnings.append(
                        ScanWarning(reason, locale, display_type, file_name=name)
                    )
                    continue
                positions[kind] += 1
                files.append(
                    LocalAssetFile(
                        path=dt_dir / name,
                        locale=locale,
                        display_type=display_type,
                        kind=kind,
                        position=positions[kind],
                    )
                )

            if files:
                plan.groups[(locale, display_type)] = files

    if plan.is_empty:
        logger.info("No media files found in '%s'", root)
    for warning in plan.warnings:
        logger.warning("Warning: %s", warning)
    return plan
