"""CLI commands via typer's CliRunner."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from conftest import FakeCodec, FakeGateway
from s3webp import cli as cli_module
from s3webp.application import Application
from s3webp.config import Settings
from s3webp.conversion.models import ConversionResult, ConversionStatus
from s3webp.errors import ConfigurationError, StorageError, ValidationIssue
from s3webp.ledger import ConversionLedger, new_record

runner = CliRunner()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway({f"img/{i}.png": bytes([80 + i]) * 600 for i in range(4)})


@pytest.fixture(autouse=True)
def wired(monkeypatch: pytest.MonkeyPatch, settings: Settings, gateway: FakeGateway):
    """Point the CLI at fakes; no env, no real S3, no signal handlers."""
    monkeypatch.setattr(cli_module, "load_settings", lambda: settings)
    monkeypatch.setattr(cli_module, "configure_logging", lambda s, verbose=False: None)
    monkeypatch.setattr(Application, "install_signal_handlers", lambda self: None)

    def build(s: Settings, dry_run: bool = False) -> Application:
        return Application(s, dry_run=dry_run, gateway=gateway, codec=FakeCodec(output_size=150))

    monkeypatch.setattr(cli_module, "build_application", build)


def _seed_history(settings: Settings, keys: list[str]) -> None:
    led = ConversionLedger(settings.tracking_file)
    for key in keys:
        led.mark_as_converted(new_record(key, key.rsplit(".", 1)[0] + ".webp", 2048, 1024, 0.5))
    led.close()


def test_help_lists_commands() -> None:
    result = runner.invoke(cli_module.app, ["--help"])
    assert result.exit_code == 0
    for command in ("convert", "health", "history", "clear-history", "serve"):
        assert command in result.output


def test_convert_prints_report(gateway: FakeGateway) -> None:
    result = runner.invoke(cli_module.app, ["convert"])
    assert result.exit_code == 0, result.output
    assert "Successful:   4" in result.output
    assert len(gateway.uploads) == 4


def test_convert_json_and_rerun_skips(gateway: FakeGateway) -> None:
    runner.invoke(cli_module.app, ["convert"])
    result = runner.invoke(cli_module.app, ["convert", "--json", "--no-progress"])
    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["skipped"] == 4
    assert report["successful"] == 0
    assert report["succeeded"] is True


def test_convert_dry_run_uploads_nothing(gateway: FakeGateway, settings: Settings) -> None:
    result = runner.invoke(cli_module.app, ["convert", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "DRY RUN" in result.output
    assert gateway.uploads == {}
    assert not settings.tracking_file.exists()


def test_convert_listing_failure_exits_nonzero(gateway: FakeGateway) -> None:
    gateway.list_error = StorageError("bucket vanished")
    result = runner.invoke(cli_module.app, ["convert"])
    assert result.exit_code == 1
    assert "Batch conversion failed: bucket vanished" in result.output


def test_convert_validation_failure(gateway: FakeGateway) -> None:
    gateway.healthy = False
    result = runner.invoke(cli_module.app, ["convert"])
    assert result.exit_code == 1
    assert gateway.uploads == {}
    result = runner.invoke(cli_module.app, ["convert", "--skip-validation"])
    assert result.exit_code == 0


def test_bad_configuration_exits(monkeypatch: pytest.MonkeyPatch) -> None:
    def invalid():
        raise ConfigurationError([ValidationIssue("aws.region", "Invalid AWS region format.")])

    monkeypatch.setattr(cli_module, "load_settings", invalid)
    result = runner.invoke(cli_module.app, ["convert"])
    assert result.exit_code == 1
    assert "aws.region" in result.output


def test_health_command() -> None:
    result = runner.invoke(cli_module.app, ["health"])
    assert result.exit_code == 0, result.output
    assert "test-bucket" in result.output


def test_history_empty() -> None:
    result = runner.invoke(cli_module.app, ["history"])
    assert result.exit_code == 0
    assert "No conversion history found" in result.output


def test_history_summary_and_verbose(settings: Settings) -> None:
    _seed_history(settings, [f"k{i}.jpg" for i in range(12)])

    result = runner.invoke(cli_module.app, ["history"])
    assert result.exit_code == 0
    assert "Total converted images: 12" in result.output
    assert "... and 2 more images" in result.output

    result = runner.invoke(cli_module.app, ["history", "--verbose"])
    assert "k0.jpg" in result.output
    assert "-> k0.webp" in result.output
    assert "50.0% compression" in result.output


def test_clear_history_requires_confirmation(settings: Settings) -> None:
    _seed_history(settings, ["a.jpg"])

    result = runner.invoke(cli_module.app, ["clear-history"], input="n\n")
    assert result.exit_code == 1
    assert ConversionLedger(settings.tracking_file).is_converted("a.jpg")

    result = runner.invoke(cli_module.app, ["clear-history", "--yes"])
    assert result.exit_code == 0
    assert "cleared" in result.output
    assert not ConversionLedger(settings.tracking_file).is_converted("a.jpg")


def test_clear_history_nothing_to_clear() -> None:
    result = runner.invoke(cli_module.app, ["clear-history", "--yes"])
    assert result.exit_code == 0
    assert "No conversion history found to clear" in result.output


def test_convert_shows_progress_unless_disabled(gateway: FakeGateway) -> None:
    result = runner.invoke(cli_module.app, ["convert"])
    assert result.exit_code == 0, result.output
    assert "Converting" in result.output

    result = runner.invoke(cli_module.app, ["convert", "--no-progress"])
    assert result.exit_code == 0, result.output
    assert "Converting" not in result.output
    assert "Skipped:      4" in result.output


def test_progress_reporter_counts_every_result(monkeypatch: pytest.MonkeyPatch) -> None:
    updates = []

    class Bar:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            updates.append("closed")

        def update(self, n, current_item=None):
            updates.append((n, current_item))

    lengths = []

    def progressbar(length, **kwargs):
        lengths.append(length)
        return Bar()

    monkeypatch.setattr(cli_module.typer, "progressbar", progressbar)
    reporter = cli_module.ProgressReporter()
    for i, key in enumerate(("a.png", "b.png"), 1):
        reporter(i, 2, ConversionResult(key, key, 10, status=ConversionStatus.SUCCESS))
    reporter.close()

    assert lengths == [2]
    assert updates == [(1, "a.png"), (1, "b.png"), "closed"]
