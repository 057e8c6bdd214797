# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Downloading sets back into the <locale>/<displayType> layout."""

import hashlib

import pytest

from .. import AssetKind, AssetState, MediaError, RemoteAsset, resolve_image_url
from ..media import download_file_name, resolve_delivery_url
from .conftest import CDN, SCREENSHOT_HEIGHT, SCREENSHOT_WIDTH, make_tree

DT = "APP_IPHONE_67"


def test_resolve_image_url_fills_placeholders():
    template = "https://cdn.test/a/{w}x{h}bb.{f}"
    assert resolve_image_url(template, 1290, 2796, "x.png") == "https://cdn.test/a/1290x2796bb.png"
    assert resolve_image_url(template, 10, 20, "x.JPEG") == "https://cdn.test/a/10x20bb.jpg"
    assert resolve_image_url(template, 10, 20, "x.jpg") == "https://cdn.test/a/10x20bb.jpg"


def test_preview_url_is_used_as_is():
    asset = RemoteAsset(id="p1", kind=AssetKind.PREVIEW, video_url="https://cdn.test/v.mp4")
    assert resolve_delivery_url(asset) == "https://cdn.test/v.mp4"


def test_missing_delivery_descriptor_raises():
    asset = RemoteAsset(id="s1", kind=AssetKind.SCREENSHOT, file_name="a.png")
    with pytest.raises(MediaError, match="No download URL"):
        resolve_delivery_url(asset)


def test_download_file_name():
    shot = RemoteAsset(id="s1", kind=AssetKind.SCREENSHOT, file_name="home.png")
    assert download_file_name(shot, 3) == "03_home.png"
    assert download_file_name(shot, 12) == "12_home.png"
    unnamed = RemoteAsset(id="p9", kind=AssetKind.PREVIEW)
    assert download_file_name(unnamed, 1) == "01_p9.mp4"
    sneaky = RemoteAsset(id="s2", kind=AssetKind.SCREENSHOT, file_name="../../etc/x.png")
    assert download_file_name(sneaky, 1) == "01_x.png"


def test_download_writes_numbered_files(api, media, tmp_path):
    api.add_set(
        "en-US",
        DT,
        items=[
            ("same.png", AssetState.COMPLETE, b"first"),
            ("same.png", AssetState.COMPLETE, b"second"),
        ],
    )
    api.add_set(
        "en-US",
        DT,
        kind=AssetKind.PREVIEW,
        items=[("demo.mov", AssetState.COMPLETE, b"video")],
    )
    api.add_set("fr-FR", DT)  # empty sets produce no folder

    summary = media.download(tmp_path, "version-1")

    folder = tmp_path / "en-US" / DT
    assert (folder / "01_same.png").read_bytes() == b"first"
    assert (folder / "02_same.png").read_bytes() == b"second"
    assert (folder / "01_demo.mov").read_bytes() == b"video"
    assert not (tmp_path / "fr-FR").exists()
    assert (summary.succeeded, summary.failed) == (3, 0)
    fetched = [c[1] for c in api.calls if c[0] == "fetch_bytes"]
    assert len(fetched) == 3
    assert all(url.startswith(CDN) for url in fetched)
    assert sum(f"/{SCREENSHOT_WIDTH}x{SCREENSHOT_HEIGHT}bb.png" in url for url in fetched) == 2
    assert sum(url.endswith("/video.mp4") for url in fetched) == 1


def test_failed_fetch_is_reported_and_skipped(api, media, tmp_path):
    remote = api.add_set(
        "en-US",
        DT,
        items=[
            ("a.png", AssetState.COMPLETE),
            ("b.png", AssetState.COMPLETE),
            ("c.png", AssetState.COMPLETE),
        ],
    )
    api.fail_fetch = {remote.item_ids[1]}

    summary = media.download(tmp_path, "version-1")

    assert (summary.succeeded, summary.failed) == (2, 1)
    names = sorted(p.name for p in (tmp_path / "en-US" / DT).iterdir())
    assert names == ["01_a.png", "03_c.png"]


def test_asset_without_url_counts_as_failed(api, media, tmp_path):
    remote = api.add_set("en-US", DT, items=[("a.png", AssetState.AWAITING_UPLOAD)])
    api.assets[remote.item_ids[0]].template_url = None

    summary = media.download(tmp_path, "version-1")

    assert (summary.succeeded, summary.failed) == (0, 1)


def test_download_is_read_only(api, media, tmp_path):
    api.add_set("en-US", DT, items=[("a.png", AssetState.COMPLETE)])

    media.download(tmp_path, "version-1")

    assert api.mutations() == []


def test_upload_then_download_round_trip(api, media, tmp_path):
    src, out = tmp_path / "src", tmp_path / "out"
    contents = {
        f"en-US/{DT}/a.png": b"\x89PNG first image bytes",
        f"en-US/{DT}/b.jpg": b"\xff\xd8 second image bytes",
        f"en-US/{DT}/demo.mp4": b"\x00\x00\x00\x18ftypmp42 video",
    }
    make_tree(src, contents)

    assert media.upload(src, "version-1").ok
    assert media.download(out, "version-1").ok

    folder = out / "en-US" / DT
    for name, downloaded in (("a.png", "01_a.png"), ("b.jpg", "02_b.jpg"), ("demo.mp4", "01_demo.mp4")):
        original = contents[f"en-US/{DT}/{name}"]
        assert hashlib.md5((folder / downloaded).read_bytes()).digest() == hashlib.md5(original).digest()


def test_transient_fetch_failure_is_retried(api, media, tmp_path):
    api.add_set("en-US", DT, items=[("a.png", AssetState.COMPLETE, b"image")])
    api.transient = {"fetch_bytes": 1}

    summary = media.download(tmp_path, "version-1")

    assert (summary.succeeded, summary.failed) == (1, 0)
    assert api.call_names().count("fetch_bytes") == 2
    assert (tmp_path / "en-US" / DT / "01_a.png").read_bytes() == b"image"


def test_unwritable_set_folder_does_not_stop_other_sets(api, media, tmp_path):
    api.add_set("en-US", DT, items=[("a.png", AssetState.COMPLETE), ("b.png", AssetState.COMPLETE)])
    api.add_set("fr-FR", DT, items=[("c.png", AssetState.COMPLETE, b"french")])
    (tmp_path / "en-US").mkdir()
    (tmp_path / "en-US" / DT).write_bytes(b"not a folder")

    summary = media.download(tmp_path, "version-1")

    assert (summary.succeeded, summary.failed) == (1, 2)
    assert len(summary.errors) == 1
    assert (tmp_path / "fr-FR" / DT / "01_c.png").read_bytes() == b"french"


def test_failed_write_leaves_no_partial_file(api, media, tmp_path):
    api.add_set("en-US", DT, items=[("a.png", AssetState.COMPLETE)])
    folder = tmp_path / "en-US" / DT
    # a directory in the way makes the final rename fail
    (folder / "01_a.png").mkdir(parents=True)

    summary = media.download(tmp_path, "version-1")

    assert (summary.succeeded, summary.failed) == (0, 1)
    assert not (folder / ".01_a.png.part").exists()
