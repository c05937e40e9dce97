from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    database_path: str = "data/photo_batch.db"
    database_busy_timeout_sec: float = 30.0

    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "photo_batch"
    notify_channel: str = "photo_batch:notify"
    notify_via_redis: bool = True

    job_types: str = "fitting,photography,travel"
    max_batch_size: int = 50
    credits_per_image: int = 1

    generator_base_url: str = "http://localhost:5678/webhook"
    generator_webhooks: str = "fitting=fitting-batch,photography=photography-batch,travel=photography-batch"
    generator_timeout_sec: float = 120.0
    public_base_url: str = "http://localhost:8900"
    callback_token: str = ""
    callback_timeout_sec: int = 1800

    retry_ceiling: int = 3
    retry_base_delay_sec: float = 5.0
    retry_multiplier: float = 2.0

    job_lease_sec: int = 300
    stall_grace_sec: int = 15
    maintenance_interval_sec: int = 30
    reconcile_grace_sec: int = 120

    admin_api_token: str = ""
    ws_jwt_secret: str = ""
    ws_jwt_algorithm: str = "HS256"

    def job_type_list(self) -> list[str]:
        return [t.strip() for t in self.job_types.split(",") if t.strip()]

    def webhook_for(self, job_type: str) -> str:
        for pair in self.generator_webhooks.split(","):
            name, _, hook = pair.partition("=")
            if name.strip() == job_type and hook.strip():
                return hook.strip()
        return f"{job_type}-batch"


settings = Settings()
