"""Runtime configuration for the sync engine.

All settings come from environment variables. A ``.env`` file at the repo
root is loaded first if present, so local development needs no exports.

Usage:
    from core.config import get_settings

    settings = get_settings()
    print(settings.reconcile_interval_seconds)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_DB_PATH = REPO_ROOT / "storefront_sync.db"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class SyncSettings:
    """Configuration for the engine, the ledger connector and the workers.

    Attributes:
        db_path: SQLite file holding connections, sales ledger, snapshots, failures
        prokip_api_url: Base URL of the ledger API (e.g. "https://api.prokip.africa")
        prokip_location_id: Business location used for sales and stock reports
        prokip_contact_id: Counterparty used for storefront sales (walk-in customer)
        http_timeout_seconds: Bound on every remote call
        reconcile_interval_seconds: Poller interval
        write_delay_ms: Pause between successive storefront writes in bulk operations
    """
    db_path: Path = DEFAULT_DB_PATH

    # Ledger (Prokip)
    prokip_api_url: Optional[str] = None
    prokip_client_id: Optional[str] = None
    prokip_client_secret: Optional[str] = None
    prokip_username: Optional[str] = None
    prokip_password: Optional[str] = None
    prokip_location_id: Optional[str] = None
    prokip_contact_id: int = 1
    payment_method: str = "cash"

    # Behavior
    http_timeout_seconds: int = 30
    reconcile_interval_seconds: int = 300
    write_delay_ms: int = 500

    # Webhook signing secrets
    shopify_webhook_secret: Optional[str] = None
    woo_webhook_secret: Optional[str] = None

    # Temporal
    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_cert_path: Optional[str] = None
    task_queue: str = "storefront-sync"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from the process environment."""
        db_path = os.getenv("SYNC_DB_PATH")
        return cls(
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
            prokip_api_url=os.getenv("PROKIP_API_URL"),
            prokip_client_id=os.getenv("PROKIP_CLIENT_ID"),
            prokip_client_secret=os.getenv("PROKIP_CLIENT_SECRET"),
            prokip_username=os.getenv("PROKIP_USERNAME"),
            prokip_password=os.getenv("PROKIP_PASSWORD"),
            prokip_location_id=os.getenv("PROKIP_LOCATION_ID"),
            prokip_contact_id=_env_int("PROKIP_CONTACT_ID", 1),
            payment_method=os.getenv("PROKIP_PAYMENT_METHOD", "cash"),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 30),
            reconcile_interval_seconds=_env_int("RECONCILE_INTERVAL_SECONDS", 300),
            write_delay_ms=_env_int("WRITE_DELAY_MS", 500),
            shopify_webhook_secret=os.getenv("SHOPIFY_WEBHOOK_SECRET"),
            woo_webhook_secret=os.getenv("WOO_WEBHOOK_SECRET"),
            temporal_endpoint=os.getenv("TEMPORAL_ENDPOINT"),
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
            temporal_api_key=os.getenv("TEMPORAL_API_KEY"),
            temporal_cert_path=os.getenv("TEMPORAL_CERT_PATH"),
            task_queue=os.getenv("TEMPORAL_TASK_QUEUE", "storefront-sync"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON"),
        )

    @property
    def write_delay_seconds(self) -> float:
        return self.write_delay_ms / 1000.0


_settings: Optional[SyncSettings] = None


def get_settings() -> SyncSettings:
    """Get the process-wide settings (read once from the environment)."""
    global _settings
    if _settings is None:
        _settings = SyncSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
