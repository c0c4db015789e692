"""Typer-based CLI: convert a bucket to WebP, inspect or clear conversion history, serve the health API."""
import json
import logging
import sys
from typing import Optional

import typer

from s3webp.application import Application
from s3webp.config import Settings, configure_logging, load_settings
from s3webp.errors import ConfigurationError
from s3webp.ledger import ConversionLedger

logger = logging.getLogger("s3webp.cli")

app = typer.Typer(
    name="s3webp",
    help="Convert images in an S3 bucket to WebP, skipping ones already converted.",
    no_args_is_help=True,
)

RECENT_LIMIT = 10


def _settings(verbose: bool = False) -> Settings:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    configure_logging(settings, verbose=verbose)
    return settings


def build_application(settings: Settings, dry_run: bool = False) -> Application:
    return Application(settings, dry_run=dry_run)


def _ledger(settings: Settings) -> ConversionLedger:
    return ConversionLedger(settings.tracking_file, batch_size=settings.ledger_batch_size)


class ProgressReporter:
    """Batch progress callback. Opens a progress bar on stderr once the batch size is known."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._bar = None

    def __call__(self, done: int, total: int, result) -> None:
        logger.debug("[%s/%s] %s: %s", done, total, result.source_key, result.status.value)
        if not self.enabled:
            return
        if self._bar is None:
            self._bar = typer.progressbar(
                length=total,
                label="Converting",
                item_show_func=lambda key: key,
                file=sys.stderr,
            )
            self._bar.__enter__()
        self._bar.update(1, current_item=result.source_key)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.__exit__(None, None, None)
            self._bar = None


@app.command()
def convert(
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Convert but do not upload or record anything."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    skip_validation: bool = typer.Option(False, "--skip-validation", help="Skip startup checks."),
    prefix: Optional[str] = typer.Option(None, "--prefix", "-p", help="Only convert keys under this prefix."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, max=50),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show a progress bar on stderr."),
):
    """Convert all supported images in the bucket to WebP."""
    settings = _settings(verbose)
    application = build_application(settings, dry_run=dry_run)
    progress_bar = ProgressReporter(enabled=progress)
    try:
        if not skip_validation:
            try:
                application.validate_startup()
            except ConfigurationError as e:
                typer.secho(str(e), fg=typer.colors.RED, err=True)
                raise typer.Exit(code=1)
        application.install_signal_handlers()
        report = application.run_conversion(prefix=prefix, concurrency=concurrency, on_progress=progress_bar)
    finally:
        progress_bar.close()
        application.shutdown()

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        label = "DRY RUN " if dry_run else ""
        typer.echo(f"{label}Conversion report")
        typer.echo(f"  Total images: {report.total_images}")
        typer.echo(f"  Successful:   {report.successful}")
        typer.echo(f"  Failed:       {report.failed}")
        typer.echo(f"  Skipped:      {report.skipped}")
        if report.successful:
            saved_kb = (report.total_size_before - report.total_size_after) / 1024
            typer.echo(f"  Saved:        {saved_kb:.1f}KB ({report.average_compression_ratio * 100:.1f}%)")
        typer.echo(f"  Duration:     {report.processing_duration:.2f}s")
        for line in report.errors:
            typer.secho(f"  ! {line}", fg=typer.colors.YELLOW, err=True)
    if not report.succeeded:
        raise typer.Exit(code=1)


@app.command()
def health(verbose: bool = typer.Option(False, "--verbose", "-v")):
    """Check configuration, codec and bucket access."""
    settings = _settings(verbose)
    application = build_application(settings)
    try:
        application.validate_startup()
    except ConfigurationError as e:
        typer.secho(f"Health check failed\n{e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    finally:
        application.shutdown()
    typer.echo("Health check completed successfully")
    typer.echo(f"  Bucket:            {settings.bucket}")
    typer.echo(f"  Region:            {settings.region}")
    typer.echo(f"  WebP quality:      {settings.quality}")
    typer.echo(f"  Supported formats: {', '.join(settings.supported_formats)}")


@app.command()
def history(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show full conversion records.")):
    """Show conversion history and statistics."""
    settings = _settings()
    ledger = _ledger(settings)
    try:
        records = ledger.get_records()
    finally:
        ledger.close()
    if not records:
        typer.echo("No conversion history found. No images have been converted yet.")
        return
    typer.echo(f"Total converted images: {len(records)}")
    if verbose:
        for i, r in enumerate(records, 1):
            saved_kb = (r.original_size - r.converted_size) / 1024
            typer.echo(f"{i}. {r.source_key}")
            typer.echo(f"   -> {r.target_key}")
            typer.echo(f"   Converted: {r.converted_at}")
            typer.echo(
                f"   Size: {r.original_size / 1024:.1f}KB -> {r.converted_size / 1024:.1f}KB "
                f"(saved {saved_kb:.1f}KB, {r.compression_ratio * 100:.1f}% compression)"
            )
        return
    typer.echo("Recently converted images:")
    for i, r in enumerate(records[-RECENT_LIMIT:], 1):
        typer.echo(f"{i}. {r.source_key}")
    if len(records) > RECENT_LIMIT:
        typer.echo(f"... and {len(records) - RECENT_LIMIT} more images")
    typer.echo("Use --verbose to see detailed conversion records")


@app.command("clear-history")
def clear_history(yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt.")):
    """Clear conversion history so every image is converted again on the next run."""
    settings = _settings()
    ledger = _ledger(settings)
    try:
        count = len(ledger)
        if count == 0 and not ledger.tracking_file.exists():
            typer.echo("No conversion history found to clear.")
            return
        typer.echo(f"Current history contains {count} converted images.")
        if not yes and not typer.confirm("Clear all conversion history?", default=False):
            typer.echo("Aborted.")
            raise typer.Exit(code=1)
        ledger.clear()
    finally:
        ledger.close()
    typer.echo("Conversion history cleared. All images will be processed again on the next run.")


@app.command()
def serve(verbose: bool = typer.Option(False, "--verbose", "-v")):
    """Run the health/history HTTP API."""
    import uvicorn

    from s3webp.main import create_app

    settings = _settings(verbose)
    uvicorn.run(create_app(build_application(settings)), host=settings.host, port=settings.port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
