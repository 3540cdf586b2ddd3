import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Config:
    tg_api_id: int
    tg_api_hash: str
    data_dir: Path
    tg_password: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 8765
    log_level: str = "INFO"
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 5.0
    backfill_timeout: float = 10.0
    send_timeout: float = 5.0
    store_write_retries: int = 2
    sync_clock_skew_ms: int = 0
    chat_list_limit: int = 50
    history_dialog_limit: int = 100
    history_messages_per_chat: int = 50
    history_batch_size: int = 20
    retention_days: int = 180
    cleanup_interval_hours: float = 24.0
    contact_sync_delay: float = 0.2

    @property
    def db_path(self) -> Path:
        return self.data_dir / "chatbridge.db"

    @property
    def session_path(self) -> Path:
        return self.data_dir / "session"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def retention_ms(self) -> int:
        return self.retention_days * 24 * 60 * 60 * 1000


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def load_config() -> Config:
    current = Path(__file__).parent.parent
    env_path = current / ".env"

    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    api_id = os.getenv("TG_API_ID")
    api_hash = os.getenv("TG_API_HASH")

    if not api_id or not api_hash:
        raise ValueError(
            "TG_API_ID and TG_API_HASH must be set in .env file.\n"
            "Get them from https://my.telegram.org"
        )

    api_id = api_id.strip().strip('"').strip("'")
    api_hash = api_hash.strip().strip('"').strip("'")

    try:
        api_id_value = int(api_id)
    except ValueError:
        raise ValueError(f"TG_API_ID must be numeric, got {api_id!r}")

    data_dir = Path(os.getenv("DATA_DIR", current / "data"))
    data_dir.mkdir(parents=True, exist_ok=True)

    return Config(
        tg_api_id=api_id_value,
        tg_api_hash=api_hash,
        data_dir=data_dir,
        tg_password=os.getenv("TG_PASSWORD") or None,
        host=os.getenv("BRIDGE_HOST", "127.0.0.1"),
        port=_env_int("PORT", 8765),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        max_reconnect_attempts=_env_int("MAX_RECONNECT_ATTEMPTS", 5),
        reconnect_delay=_env_float("RECONNECT_DELAY", 5.0),
        backfill_timeout=_env_float("BACKFILL_TIMEOUT", 10.0),
        send_timeout=_env_float("SEND_TIMEOUT", 5.0),
        store_write_retries=_env_int("STORE_WRITE_RETRIES", 2),
        sync_clock_skew_ms=_env_int("SYNC_CLOCK_SKEW_MS", 0),
        chat_list_limit=_env_int("CHAT_LIST_LIMIT", 50),
        history_dialog_limit=_env_int("HISTORY_DIALOG_LIMIT", 100),
        history_messages_per_chat=_env_int("HISTORY_MESSAGES_PER_CHAT", 50),
        history_batch_size=_env_int("HISTORY_BATCH_SIZE", 20),
        retention_days=_env_int("RETENTION_DAYS", 180),
        cleanup_interval_hours=_env_float("CLEANUP_INTERVAL_HOURS", 24.0),
        contact_sync_delay=_env_float("CONTACT_SYNC_DELAY", 0.2),
    )
