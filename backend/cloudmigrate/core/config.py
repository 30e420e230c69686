from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CloudMigrate API"
    env: str = "dev"
    api_prefix: str = "/v1"
    log_level: str = "INFO"

    database_dsn: str = "sqlite:///./cloudmigrate.db"
    redis_dsn: str = "redis://localhost:6379/0"

    # "celery" dispatches jobs to the worker, "inline" runs them as FastAPI background tasks
    task_dispatch: str = "celery"

    local_storage_dir: str = "./data"

    s3_endpoint_url: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key: str = ""
    s3_secret_key: str = ""

    gcs_project: str = ""

    auth0_domain: str = ""
    auth0_audience: str = ""
    auth0_algorithms: str = "RS256"
    auth0_skip_verify: bool = True
    admin_subjects: str = ""

    transfer_concurrency: int = Field(default=8, ge=1, le=64)
    checkpoint_batch_size: int = Field(default=40, ge=1)
    child_batch_size: int = Field(default=200, ge=1)
    listing_page_size: int = Field(default=500, ge=1)

    jobs_page_size: int = 50
    jobs_page_size_max: int = 500

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def admin_subject_set(self) -> set[str]:
        return {s.strip() for s in self.admin_subjects.split(",") if s.strip()}


settings = Settings()
