from functools import lru_cache
from typing import List

import pydantic
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Manages all Cumulus settings.
    Reads from environment variables (and .env file).

    Every field has a default so importing the package never
    requires cloud credentials.
    """

    # --- Core Application Configuration ---
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # --- AWS / Object Store ---
    AWS_REGION: str = "us-east-1"
    RESULT_BUCKET: str | None = None
    RESULT_PREFIX: str = ""

    # --- ECS / Fargate Workers ---
    ECS_CLUSTER: str = "cumulus-cluster"
    WORKER_IMAGE: str | None = None
    WORKER_CONTAINER_NAME: str = "cumulus-worker"
    SUBNETS: str = ""
    SECURITY_GROUPS: str = ""
    ASSIGN_PUBLIC_IP: bool = True
    EXECUTION_ROLE_ARN: str | None = None
    TASK_ROLE_ARN: str | None = None
    LOG_GROUP: str = "/aws/ecs/cumulus-worker"
    DEFAULT_CPU_ARCHITECTURE: str = "X86_64"

    # --- Redis & Celery Configuration ---
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379

    @pydantic.computed_field
    @property
    def REDIS_URL(self) -> str:
        """
        Construct the full Redis URL for Celery.
        """
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/0"

    @pydantic.computed_field
    @property
    def SUBNET_IDS(self) -> List[str]:
        return [s.strip() for s in self.SUBNETS.split(",") if s.strip()]

    @pydantic.computed_field
    @property
    def SECURITY_GROUP_IDS(self) -> List[str]:
        return [s.strip() for s in self.SECURITY_GROUPS.split(",") if s.strip()]

    # --- Scheduler Defaults ---
    DEFAULT_QUOTA: int = 10
    DEFAULT_QUOTA_MODE: str = "tasks"
    DEFAULT_CPU: float = 4
    DEFAULT_MEMORY: str = "8GB"
    DEFAULT_TIMEOUT_SECONDS: float = 3600
    POLL_INTERVAL_SECONDS: float = 2.0
    LAUNCH_RETRIES: int = 3
    VANISHED_GRACE_SECONDS: float = 60.0
    MAX_COST_PER_HOUR: float | None = None
    CHECK_ACCOUNT_QUOTA: bool = True

    # Pydantic-Settings configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the Settings object.
    Using @lru_cache ensures the .env file is read only once.
    """
    return Settings()


settings = get_settings()
