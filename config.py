"""
Configuration management for pgtime-maintainer.

This module provides centralized configuration with validation using Pydantic.
All configuration values are loaded from environment variables with sensible defaults.
Every value here can be re-read at runtime through reload_config() (SIGHUP).
"""

from typing import Optional, Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database connection and pool configuration."""

    model_config = SettingsConfigDict(env_prefix='DB_', case_sensitive=False)

    host: str = Field(default='localhost', description='Database host')
    port: int = Field(default=5432, description='Database port')
    name: str = Field(default='postgres', alias='POSTGRES_DB', description='Database name')
    user: str = Field(default='postgres', alias='POSTGRES_USER', description='Database user')
    password: str = Field(default='postgres', alias='POSTGRES_PASSWORD', description='Database password')
    application_name: str = Field(
        default='pgtime maintenance worker',
        description='application_name reported to the server'
    )

    # The control loop owns one connection; a worker pool needs one per worker
    pool_size: int = Field(default=1, description='Connection pool size')
    connect_timeout: int = Field(default=10, description='Connect timeout in seconds')

    @field_validator('pool_size', 'connect_timeout')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate pool size and timeout are positive."""
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @property
    def connection_string(self) -> str:
        """Generate PostgreSQL connection string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"

    @property
    def target(self) -> str:
        """Connection identity without credentials, safe to log."""
        return f"{self.user}@{self.host}:{self.port}/{self.name}"


class MaintenanceConfig(BaseSettings):
    """Maintenance loop configuration."""

    model_config = SettingsConfigDict(env_prefix='MAINTENANCE_', case_sensitive=False)

    interval_seconds: float = Field(
        default=300.0,
        description='Seconds between passes; also the ceiling on the idle wait'
    )
    lookahead: int = Field(
        default=2,
        description='Number of future partition intervals created ahead of now'
    )
    operation_timeout_seconds: float = Field(
        default=60.0,
        description='statement_timeout applied to every partition operation'
    )
    compression_access_method: str = Field(
        default='columnar',
        description='Table access method a partition is switched to when compressed'
    )
    catalog_schema: str = Field(
        default='pgtime',
        description='Schema holding the table registration catalog'
    )

    @field_validator('interval_seconds', 'operation_timeout_seconds')
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError('Duration must be positive')
        return v

    @field_validator('lookahead')
    @classmethod
    def validate_lookahead(cls, v: int) -> int:
        """Validate lookahead is at least one interval."""
        if v < 1:
            raise ValueError('lookahead must be at least 1')
        return v


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix='LOG_', case_sensitive=False)

    level: Literal['debug', 'info', 'warning', 'error', 'critical'] = Field(
        default='info',
        description='Logging level'
    )
    format: str = Field(
        default='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        description='logging.Formatter format string'
    )


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # Sub-configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load configuration from environment."""
        return cls(
            database=DatabaseConfig(),
            maintenance=MaintenanceConfig(),
            logging=LoggingConfig()
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config


def reload_config() -> AppConfig:
    """Reload configuration from environment."""
    global _config
    _config = AppConfig.load()
    return _config
