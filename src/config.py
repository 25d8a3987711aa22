from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    supabase_url: str
    supabase_service_role_key: str
    supabase_timeout_seconds: float = 15.0
    eca_webhook_secret: str | None = None
    eca_request_timeout_seconds: float = 10.0
    eca_partial_failure_mode: str = "continue"  # continue | strict
    eca_strict_transaction_types: str = ""  # comma separated, e.g. "SALE,PURCHASE"
    eca_audit_table: str = "webhook_logs"
    eca_audit_export_url: str | None = None
    eca_audit_export_bearer_token: str | None = None
    eca_audit_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def store_timeout_seconds(self) -> float:
        """PostgREST timeout, never longer than the per-request deadline."""
        if self.eca_request_timeout_seconds > 0:
            return min(self.supabase_timeout_seconds, self.eca_request_timeout_seconds)
        return self.supabase_timeout_seconds


settings = Settings()
