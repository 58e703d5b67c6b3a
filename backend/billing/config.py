from functools import lru_cache
from typing import List, Tuple
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    firebase_project_id: str = Field(..., env="FIREBASE_PROJECT_ID")
    # Empty means application default credentials (Cloud Run / Functions runtime).
    firebase_service_account_path: str | None = Field(None, env="FIREBASE_SERVICE_ACCOUNT_PATH")
    firebase_storage_bucket: str | None = Field(None, env="FIREBASE_STORAGE_BUCKET")

    razorpay_key_id: str | None = Field(None, env="RAZORPAY_KEY_ID")
    razorpay_key_secret: str | None = Field(None, env="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str | None = Field(None, env="RAZORPAY_WEBHOOK_SECRET")
    razorpay_auto_capture: bool = Field(True, env="RAZORPAY_AUTO_CAPTURE")
    default_currency: str = Field("INR", env="DEFAULT_CURRENCY")

    admin_uids: str = Field("", env="ADMIN_UIDS")
    scheduler_token: str | None = Field(None, env="SCHEDULER_TOKEN")

    provisioning_queue: str = Field("inline", env="PROVISIONING_QUEUE")
    provisioning_queue_name: str = Field("provisioning", env="PROVISIONING_QUEUE_NAME")
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    provisioning_max_retries: int = Field(3, env="PROVISIONING_MAX_RETRIES")

    default_validity_days: int = Field(30, env="DEFAULT_VALIDITY_DAYS")
    feed_entry_ttl_hours: int = Field(24, env="FEED_ENTRY_TTL_HOURS")
    expiry_warning_hours: str = Field("72,24,1", env="EXPIRY_WARNING_HOURS")
    notification_workers: int = Field(8, env="NOTIFICATION_WORKERS")

    log_level: str = Field("INFO", env="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def admin_uid_set(self) -> set[str]:
        return {uid.strip() for uid in self.admin_uids.split(",") if uid.strip()}

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def expiry_warning_thresholds(self) -> Tuple[int, ...]:
        # Most distant lead time first, so warnings go out in descending order.
        hours: List[int] = []
        for raw in self.expiry_warning_hours.split(","):
            raw = raw.strip()
            if not raw:
                continue
            try:
                value = int(raw)
            except ValueError:
                continue
            if value > 0 and value not in hours:
                hours.append(value)
        return tuple(sorted(hours, reverse=True))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
