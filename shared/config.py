"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "escrow-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "escrow"
    database_dsn: Optional[str] = None  # full async URL, wins over the parts above

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    outbox_enabled: bool = True

    # Logging
    log_level: str = "INFO"

    # Escrow lifecycle
    escrow_hold_minutes: int = 120
    settlement_delay_seconds: int = 0
    sweep_interval_seconds: int = 60
    sweep_batch_size: int = 100
    payment_methods: str = "mpesa,emis,unitel"
    default_currency: str = "MZN"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    @property
    def allowed_payment_methods(self) -> frozenset[str]:
        """Payment channels accepted at the API boundary."""
        return frozenset(
            method.strip().lower()
            for method in self.payment_methods.split(",")
            if method.strip()
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
