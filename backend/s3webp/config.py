"""Application configuration. Loads from environment and .env file.

Settings are read once at process start by load_settings() and passed to the
components that need them; nothing reads the environment after that.
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from s3webp.errors import ConfigurationError, ValidationIssue

VERSION = "1.0.0"
BASE_DIR = Path(__file__).resolve().parent.parent

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_LEVELS = {"error": logging.ERROR, "warn": logging.WARNING, "info": logging.INFO, "debug": logging.DEBUG}
LOG_FORMATS = ("json", "simple", "combined")

_REGION_RE = re.compile(r"^[a-z]{2,}-[a-z]+-\d+$")
_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
_IPV4_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


@dataclass(frozen=True)
class Settings:
    # Object store
    region: str = "ap-southeast-1"
    bucket: str = "my-webp-bucket"
    prefix: str = ""
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    cache_control: str = "public, max-age=31536000"
    # Conversion
    quality: int = 80
    supported_formats: tuple[str, ...] = ("jpeg", "jpg", "png")
    max_file_size: int = 100 * 1024 * 1024
    # Processing
    concurrency: int = 5
    retry_attempts: int = 3
    dispatch_delay: float = 0.01
    # Ledger
    tracking_file: Path = field(default_factory=lambda: Path("logs") / "converted-images.json")
    ledger_batch_size: int = 100
    # Logging
    log_level: str = "info"
    log_format: str = "json"
    # Server (for uvicorn)
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: tuple[str, ...] = ()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError([ValidationIssue(name, f"Expected an integer, got {raw!r}")])


def validate_bucket_name(name: str) -> bool:
    """S3 bucket naming rules."""
    if not name or len(name) < 3 or len(name) > 63:
        return False
    if not _BUCKET_RE.match(name):
        return False
    if ".." in name or "--" in name:
        return False
    return not _IPV4_RE.match(name)


def validate_settings(settings: Settings) -> list[ValidationIssue]:
    errors: list[ValidationIssue] = []
    if not _REGION_RE.match(settings.region or ""):
        errors.append(ValidationIssue("aws.region", "Invalid AWS region format. Expected format: us-east-1, eu-west-1, etc."))
    if not validate_bucket_name(settings.bucket):
        errors.append(ValidationIssue(
            "aws.bucket",
            "Invalid S3 bucket name. Must be 3-63 characters, lowercase letters, numbers, hyphens, and periods only.",
        ))
    if not 1 <= settings.quality <= 100:
        errors.append(ValidationIssue("conversion.quality", "WebP quality must be between 1 and 100"))
    if settings.max_file_size <= 0:
        errors.append(ValidationIssue("conversion.max_file_size", "Maximum file size must be greater than 0"))
    if not settings.supported_formats:
        errors.append(ValidationIssue("conversion.supported_formats", "Supported formats must be a non-empty list"))
    if not 1 <= settings.concurrency <= 50:
        errors.append(ValidationIssue("processing.concurrency", "Concurrency must be between 1 and 50"))
    if not 0 <= settings.retry_attempts <= 10:
        errors.append(ValidationIssue("processing.retry_attempts", "Retry attempts must be between 0 and 10"))
    if settings.ledger_batch_size < 1:
        errors.append(ValidationIssue("ledger.batch_size", "Ledger batch size must be at least 1"))
    if settings.log_level not in LOG_LEVELS:
        errors.append(ValidationIssue("logging.level", "Log level must be one of: error, warn, info, debug"))
    if settings.log_format not in LOG_FORMATS:
        errors.append(ValidationIssue("logging.format", "Log format must be one of: json, simple, combined"))
    if not 1 <= settings.port <= 65535:
        errors.append(ValidationIssue("server.port", "Server port must be between 1 and 65535"))
    return errors


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build and validate Settings. Reads os.environ (after .env files) unless env is given."""
    if env is None:
        # .env from cwd, then backend/.env, then project root .env
        load_dotenv()
        load_dotenv(BASE_DIR / ".env")
        load_dotenv(BASE_DIR.parent / ".env")
        env = os.environ

    formats = tuple(
        f.strip().lower().lstrip(".")
        for f in (env.get("SUPPORTED_FORMATS") or "jpeg,jpg,png").split(",")
        if f.strip()
    )
    settings = Settings(
        region=env.get("AWS_REGION") or "ap-southeast-1",
        bucket=env.get("AWS_BUCKET") or "my-webp-bucket",
        prefix=env.get("AWS_PREFIX") or "",
        access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
        secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
        endpoint_url=env.get("AWS_ENDPOINT_URL") or None,
        cache_control=env.get("CACHE_CONTROL") or "public, max-age=31536000",
        quality=_int(env, "WEBP_QUALITY", 80),
        supported_formats=formats,
        max_file_size=_int(env, "MAX_FILE_SIZE", 100 * 1024 * 1024),
        concurrency=_int(env, "CONCURRENCY", 5),
        retry_attempts=_int(env, "RETRY_ATTEMPTS", 3),
        dispatch_delay=_int(env, "DISPATCH_DELAY_MS", 10) / 1000.0,
        tracking_file=Path(env.get("TRACKING_FILE") or str(Path("logs") / "converted-images.json")),
        ledger_batch_size=_int(env, "LEDGER_BATCH_SIZE", 100),
        log_level=(env.get("LOG_LEVEL") or "info").lower(),
        log_format=(env.get("LOG_FORMAT") or "json").lower(),
        host=env.get("HOST") or "0.0.0.0",
        port=_int(env, "PORT", 3000),
        # comma-separated, e.g. "http://localhost:5173,http://127.0.0.1:5173"; empty allows any origin
        cors_origins=tuple(o.strip() for o in (env.get("CORS_ORIGINS") or "").split(",") if o.strip()),
    )
    errors = validate_settings(settings)
    if errors:
        raise ConfigurationError(errors)
    return settings


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extra={"operation": ...} is carried through."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, LOG_DATEFMT),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        operation = getattr(record, "operation", None)
        if operation:
            payload["operation"] = operation
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else LOG_LEVELS.get(settings.log_level, logging.INFO)
    handler = logging.StreamHandler()
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # boto's own debug output drowns ours
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
