from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


def _getenv_int(name: str, default: int) -> int:
    v = os.getenv(name, str(default)).strip()
    try:
        return int(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be an integer; got {v!r}") from err


def _getenv_float(name: str, default: float) -> float:
    v = os.getenv(name, str(default)).strip()
    try:
        return float(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be a number; got {v!r}") from err


def _getenv_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


def _getenv_list_str(name: str, default_csv: str) -> list[str]:
    raw = os.getenv(name, default_csv).strip()
    out: list[str] = []
    for tok in (t.strip() for t in raw.split(",")):
        if tok:
            out.append(tok)
    return out


def _getenv_bool(name: str, default: bool) -> bool:
    """
    Read a loosely-typed boolean from the environment.

    Treats "1", "true", "yes", "on" (case-insensitive) as True;
    "0", "false", "no", "off", "" as False. If unset, returns default.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    return True


# Load .env from project root if present
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env", override=False)

GROWTH_POLICY_PATH = Path(
    _getenv_str("GROWTH_POLICY_PATH", str(Path(__file__).resolve().parent / "growth_policy.yaml"))
)

# -------------------------------
# Growth defaults applied to newly created repositories
# -------------------------------
DEFAULT_FORWARD_THRESHOLD: int = _getenv_int("DEFAULT_FORWARD_THRESHOLD", 3)
DEFAULT_QUALITY_THRESHOLD: float = _getenv_float("DEFAULT_QUALITY_THRESHOLD", 0.7)
DEFAULT_DIGEST_FREQUENCY: str = _getenv_str("DEFAULT_DIGEST_FREQUENCY", "weekly")
DEFAULT_SNOWBALL_ENABLED: bool = _getenv_bool("DEFAULT_SNOWBALL_ENABLED", True)

# Fixed trust score given to CSV-sourced rows; compared against a repository's
# quality_threshold by the gate. Not derived from row content.
BASE_CSV_TRUST_SCORE: float = _getenv_float("BASE_CSV_TRUST_SCORE", 0.7)

# -------------------------------
# CSV import limits
# -------------------------------
IMPORT_MAX_ROWS: int = _getenv_int("IMPORT_MAX_ROWS", 10_000)
IMPORT_MAX_BYTES: int = _getenv_int("IMPORT_MAX_BYTES", 10 * 1024 * 1024)  # 10 MiB
IMPORT_ROW_CONCURRENCY: int = _getenv_int("IMPORT_ROW_CONCURRENCY", 4)
REPO_IMPORT_MAX_CONCURRENCY: int = _getenv_int("REPO_IMPORT_MAX_CONCURRENCY", 2)

# -------------------------------
# Digest delivery collaborator
# -------------------------------
DIGEST_DELIVERY_URL: str = _getenv_str("DIGEST_DELIVERY_URL", "")
DIGEST_DELIVERY_API_KEY: str = _getenv_str("DIGEST_DELIVERY_API_KEY", "")
DIGEST_DELIVERY_TIMEOUT_S: float = _getenv_float("DIGEST_DELIVERY_TIMEOUT_S", 10.0)
DIGEST_MAX_ITEMS: int = _getenv_int("DIGEST_MAX_ITEMS", 10)
# Transport errors talking to the collaborator are retried in-process before
# the job is handed back to RQ.
DIGEST_DELIVERY_MAX_ATTEMPTS: int = _getenv_int("DIGEST_DELIVERY_MAX_ATTEMPTS", 3)
DIGEST_DELIVERY_MAX_BACKOFF_S: float = _getenv_float("DIGEST_DELIVERY_MAX_BACKOFF_S", 8.0)


@dataclass(frozen=True)
class Settings:
    # Optional API key for the admission API; empty disables the check.
    API_KEY: str = _getenv_str("API_KEY", "")
    API_ALLOWED_IPS: list[str] = field(
        default_factory=lambda: _getenv_list_str("API_ALLOWED_IPS", "")
    )


@dataclass(frozen=True)
class QueueConfig:
    queue_name: str
    dlq_name: str
    rq_redis_url: str
    job_timeout_seconds: int
    max_retries: int


@dataclass(frozen=True)
class GrowthDefaults:
    forward_threshold: int
    quality_threshold: float
    digest_frequency: str
    snowball_enabled: bool
    base_csv_trust_score: float


@dataclass(frozen=True)
class ImportConfig:
    max_rows: int
    max_bytes: int
    row_concurrency: int
    repo_max_concurrency: int


@dataclass(frozen=True)
class DeliveryConfig:
    url: str
    api_key: str
    timeout_s: float
    max_items: int
    max_attempts: int = 3
    max_backoff_s: float = 8.0


@dataclass(frozen=True)
class AppConfig:
    queue: QueueConfig
    growth: GrowthDefaults
    imports: ImportConfig
    delivery: DeliveryConfig


def load_settings() -> AppConfig:
    queue = QueueConfig(
        queue_name=_getenv_str("QUEUE_NAME", "growth"),
        dlq_name=_getenv_str("DLQ_NAME", "growth_dlq"),
        rq_redis_url=_getenv_str("RQ_REDIS_URL", "redis://127.0.0.1:6379/0"),
        job_timeout_seconds=_getenv_int("JOB_TIMEOUT_SECONDS", 600),
        max_retries=_getenv_int("JOB_MAX_RETRIES", 3),
    )
    growth = GrowthDefaults(
        forward_threshold=DEFAULT_FORWARD_THRESHOLD,
        quality_threshold=DEFAULT_QUALITY_THRESHOLD,
        digest_frequency=DEFAULT_DIGEST_FREQUENCY,
        snowball_enabled=DEFAULT_SNOWBALL_ENABLED,
        base_csv_trust_score=BASE_CSV_TRUST_SCORE,
    )
    imports = ImportConfig(
        max_rows=IMPORT_MAX_ROWS,
        max_bytes=IMPORT_MAX_BYTES,
        row_concurrency=IMPORT_ROW_CONCURRENCY,
        repo_max_concurrency=REPO_IMPORT_MAX_CONCURRENCY,
    )
    delivery = DeliveryConfig(
        url=DIGEST_DELIVERY_URL,
        api_key=DIGEST_DELIVERY_API_KEY,
        timeout_s=DIGEST_DELIVERY_TIMEOUT_S,
        max_items=DIGEST_MAX_ITEMS,
        max_attempts=DIGEST_DELIVERY_MAX_ATTEMPTS,
        max_backoff_s=DIGEST_DELIVERY_MAX_BACKOFF_S,
    )
    return AppConfig(queue=queue, growth=growth, imports=imports, delivery=delivery)


def load_growth_policy(path: Path | None = None) -> dict[str, Any]:
    """
    Load domain classification lists from growth_policy.yaml
    (override the location with GROWTH_POLICY_PATH).

    Expected shape:

      freemail_domains: [gmail.com, ...]
      disposable_domains: [mailinator.com, ...]

    Returns an empty dict if the file does not exist. Unknown keys are kept.
    """
    cfg_path = path or GROWTH_POLICY_PATH
    if not cfg_path.exists():
        return {}

    cfg = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    if not isinstance(cfg, dict):
        return {}
    return cfg


settings: Settings = Settings()

app_config: AppConfig = load_settings()

__all__ = [
    "Settings",
    "QueueConfig",
    "GrowthDefaults",
    "ImportConfig",
    "DeliveryConfig",
    "AppConfig",
    "load_settings",
    "load_growth_policy",
    "settings",
    "app_config",
    "DEFAULT_FORWARD_THRESHOLD",
    "DEFAULT_QUALITY_THRESHOLD",
    "DEFAULT_DIGEST_FREQUENCY",
    "DEFAULT_SNOWBALL_ENABLED",
    "BASE_CSV_TRUST_SCORE",
    "IMPORT_MAX_ROWS",
    "IMPORT_MAX_BYTES",
    "IMPORT_ROW_CONCURRENCY",
    "REPO_IMPORT_MAX_CONCURRENCY",
    "DIGEST_DELIVERY_URL",
    "DIGEST_DELIVERY_API_KEY",
    "DIGEST_DELIVERY_TIMEOUT_S",
    "DIGEST_MAX_ITEMS",
    "DIGEST_DELIVERY_MAX_ATTEMPTS",
    "DIGEST_DELIVERY_MAX_BACKOFF_S",
]
