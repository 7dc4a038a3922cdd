"""Settings read from the environment or a .env file."""
from dataclasses import dataclass

from decouple import Choices, config


@dataclass(frozen=True)
class Settings:
    namespace: str = "v2-titanium-dec1"          # prefix of every store key
    db_path: str = "data/portal.db"
    debounce_seconds: float = 1.0
    remote_backend: str = "none"                 # "none" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    collection: str = "app_data_v2_titanium"     # remote document namespace
    tx_prefix: str = "EDEN"
    log_level: str = "INFO"
    reminder_interval_seconds: float = 30.0      # 0 turns the reminder loop off
    monthly_automation: bool = True              # dues and recurring bills at startup

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            namespace=config("PORTAL_NAMESPACE", default=cls.namespace),
            db_path=config("PORTAL_DB_PATH", default=cls.db_path),
            debounce_seconds=config("PORTAL_DEBOUNCE_SECONDS", default=cls.debounce_seconds, cast=float),
            remote_backend=config(
                "PORTAL_REMOTE_BACKEND", default=cls.remote_backend, cast=Choices(["none", "redis"])
            ),
            redis_url=config("REDIS_URL", default=cls.redis_url),
            collection=config("PORTAL_COLLECTION", default=cls.collection),
            tx_prefix=config("PORTAL_TX_PREFIX", default=cls.tx_prefix),
            log_level=config("PORTAL_LOG_LEVEL", default=cls.log_level),
            reminder_interval_seconds=config(
                "PORTAL_REMINDER_INTERVAL", default=cls.reminder_interval_seconds, cast=float
            ),
            monthly_automation=config("PORTAL_MONTHLY_AUTOMATION", default=cls.monthly_automation, cast=bool),
        )
