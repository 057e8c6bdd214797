# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command-line interface.

    ascmedia configure
    ascmedia media upload FOLDER --version-id ID [--replace] [--wait]
    ascmedia media download --version-id ID [--folder PATH]
    ascmedia media verify --version-id ID [--folder PATH]
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from .client import AssetKind, MediaError
from .config import Config, ConfigError
from .folder import expand_path, scan_media_folder
from .media import MediaSyncClient, PollOutcome, RunSummary

app = typer.Typer(help="Screenshot and app preview sync for App Store Connect")
media_app = typer.Typer(name="media", help="Manage screenshots and app preview videos")
app.add_typer(media_app, name="media")


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def make_media_client(workers: int = 4) -> MediaSyncClient:
    """Build a client from the stored configuration."""
    return MediaSyncClient.from_auth(Config.load().to_auth(), max_workers=workers)


def _open_client(workers: int = 4) -> MediaSyncClient:
    try:
        return make_media_client(workers)
    except ConfigError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)


def _finish(summary: RunSummary) -> None:
    typer.echo(f"\nDone. {summary}.")
    raise typer.Exit(0 if summary.ok else 1)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log HTTP requests"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format="%(message)s"
    )


@app.command("configure")
def configure(
    key_id: str = typer.Option(..., prompt="Key ID", help="API key ID"),
    issuer_id: str = typer.Option(..., prompt="Issuer ID", help="API key issuer ID"),
    private_key_path: str = typer.Option(
        ..., prompt="Path to .p8 private key", help="Path to the .p8 private key"
    ),
):
    """Store API credentials in ~/.asc-client/config.json."""
    key_path = expand_path(private_key_path)
    if not key_path.is_file():
        typer.echo(f"Error: Private key file not found at {key_path}", err=True)
        raise typer.Exit(1)
    path = Config(key_id=key_id, issuer_id=issuer_id, private_key_path=str(key_path)).save()
    typer.echo(f"Configuration saved to {path}")


@media_app.command("upload")
def upload(
    folder: str = typer.Argument(..., help="Media folder: <locale>/<displayType>/<files>"),
    version_id: str = typer.Option(..., "--version-id", help="App Store version ID"),
    replace: bool = typer.Option(
        False, "--replace", help="Delete existing media in matching sets before uploading"
    ),
    wait: bool = typer.Option(False, "--wait", help="Wait for processing to finish"),
    wait_timeout: int = typer.Option(600, "--wait-timeout", help="Seconds to wait with --wait"),
    workers: int = typer.Option(4, "--workers", help="Parallel chunk transfers per file"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
):
    """Upload screenshots and app preview videos from a folder."""
    plan = scan_media_folder(folder)
    if plan.is_empty:
        typer.echo(f"No media files found in '{plan.root}'.")
        _finish(RunSummary(skipped=plan.skipped))

    if replace:
        typer.echo("Mode: Replace existing media\n")
    for (locale, display_type), files in sorted(plan.groups.items()):
        shots = sum(1 for f in files if f.kind is AssetKind.SCREENSHOT)
        previews = len(files) - shots
        parts = [_plural(n, w) for n, w in ((shots, "screenshot"), (previews, "preview")) if n]
        typer.echo(f"[{locale}] {display_type}: {', '.join(parts)}")

    prompt = (
        f"Upload {_plural(plan.total_screenshots, 'screenshot')} and "
        f"{_plural(plan.total_previews, 'preview')} for {_plural(len(plan.locales), 'locale')}?"
    )
    if not yes and not typer.confirm(prompt):
        typer.echo("Cancelled.")
        raise typer.Exit(0)

    media = _open_client(workers)
    try:
        summary = media.upload(plan.root, version_id, replace=replace, plan=plan)
        if wait and summary.assets:
            typer.echo(f"\nWaiting for {_plural(len(summary.assets), 'item')} to process...")
            results = media.await_assets(summary.assets, timeout=wait_timeout)
            for asset in summary.assets:
                result = results[asset.id]
                if result.outcome is not PollOutcome.COMPLETE:
                    typer.echo(f"  {asset.file_name}: {result.outcome.value} ({result.state.value})")
                if result.outcome is PollOutcome.FAILED:
                    summary.record_failure(asset.file_name, MediaError("processing failed"))
    except MediaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)
    finally:
        media.close()
    _finish(summary)


@media_app.command("download")
def download(
    version_id: str = typer.Option(..., "--version-id", help="App Store version ID"),
    folder: Optional[str] = typer.Option(
        None, "--folder", help="Output folder. Defaults to <version-id>-media"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
):
    """Download screenshots and app preview videos to a folder."""
    out = expand_path(folder or f"{version_id}-media")
    if out.exists() and not yes:
        if not typer.confirm(f"Folder '{out}' already exists. Overwrite matching files?"):
            typer.echo("Cancelled.")
            raise typer.Exit(0)

    media = _open_client()
    try:
        summary = media.download(out, version_id)
    except MediaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)
    finally:
        media.close()

    if summary.succeeded == 0 and summary.failed == 0:
        typer.echo("No media found for this version.")
    else:
        typer.echo(f"Output: {out}")
    _finish(summary)


@media_app.command("verify")
def verify(
    version_id: str = typer.Option(..., "--version-id", help="App Store version ID"),
    folder: Optional[str] = typer.Option(
        None, "--folder", help="Media folder used to retry stuck uploads"
    ),
    include_failed: bool = typer.Option(
        False, "--include-failed", help="Also retry items that failed processing"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
):
    """Check processing status of all media, optionally retrying stuck items."""
    media = _open_client()
    try:
        report = media.verify(version_id)
        for line in report.lines():
            typer.echo(line)
        typer.echo(f"\n{report.summary_line()}")

        status = RunSummary(
            succeeded=report.complete,
            failed=len(report.failed),
            skipped=len(report.stuck),
        )
        targets = len(report.stuck) + (len(report.failed) if include_failed else 0)
        if targets == 0:
            _finish(status)
        if folder is None:
            typer.echo("Use --folder to provide the media folder and retry stuck uploads.")
            _finish(status)

        if not yes and not typer.confirm(f"Retry {_plural(targets, 'item')}?"):
            typer.echo("Cancelled.")
            raise typer.Exit(0)

        summary = media.repair(report, Path(folder), include_failed=include_failed)

        typer.echo("\nRe-verifying...\n")
        report = media.verify(version_id)
        for line in report.lines():
            typer.echo(line)
        typer.echo(f"\n{report.summary_line()}")
    except MediaError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)
    finally:
        media.close()
    _finish(summary)


def main():
    app()


if __name__ == "__main__":
    main()
