from functools import lru_cache

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Doorman Signup Service"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    log_json: bool = True

    # Account backend (Supabase admin API)
    supabase_url: str = Field(
        default="",
        validation_alias=AliasChoices("SUPABASE_URL", "VITE_SUPABASE_URL"),
    )
    supabase_service_role_key: SecretStr = SecretStr("")
    signup_redirect_url: str = "https://lariyu.vercel.app/email-confirmation"
    auth_timeout_seconds: float = 10.0

    # Mail relay
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    smtp_use_tls: bool = True
    smtp_username: str = Field(
        default="",
        validation_alias=AliasChoices("SMTP_USERNAME", "GMAIL_USER"),
    )
    smtp_password: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("SMTP_PASSWORD", "GMAIL_APP_PASSWORD"),
    )
    mail_from_name: str = "Lariyu Luxury Steps"
    mail_timeout_seconds: float = 15.0
    confirmation_link_ttl_minutes: int = 5

    # Counter store
    redis_url: str | None = None
    redis_connect_timeout: float = 2.0
    redis_socket_timeout: float = 1.0
    redis_retries: int = 3
    store_recheck_seconds: float = 30.0

    # HTTP surface
    cors_origins: list[str] = ["*"]
    trusted_proxy_hops: int = 0
    max_body_bytes: int = 10 * 1024
    shutdown_grace_seconds: float = 10.0
    expose_rate_limit_status: bool = False

    # Admission
    global_max: int = 100
    global_window_seconds: int = 15 * 60
    signup_ip_max: int = 5
    signup_ip_window_seconds: int = 60 * 60
    signup_email_max: int = 10
    signup_email_window_seconds: int = 60 * 60
    signup_device_max: int = 5
    signup_device_window_seconds: int = 60 * 60
    slowdown_threshold: int = 2
    slowdown_base_ms: int = 1000
    slowdown_cap_ms: int = 30_000
    slowdown_window_seconds: int = 15 * 60

    rollback_on_email_failure: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def auth_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key.get_secret_value())

    @property
    def mail_configured(self) -> bool:
        return bool(self.smtp_username and self.smtp_password.get_secret_value())


@lru_cache
def get_settings() -> Settings:
    return Settings()
