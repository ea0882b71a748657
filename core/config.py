"""
================================================
Configuration management for the bulk engine.
================================================

Loads all configuration from environment variables (.env file) and provides
a centralized Config singleton for application-wide access.

The configuration system covers:
- PostgreSQL connection settings
- Default and per-entity command timeouts for bulk operations
- Staging table naming and COPY serialisation options

Example:
    >>> from core.config import config
    >>>
    >>> # Database connection
    >>> engine_url = config.get_connection_string()
    >>>
    >>> # Bulk settings
    >>> print(f"Default timeout: {config.bulk.command_timeout}s")
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(dotenv_path=env_path)


def parse_timeout_overrides(raw: Optional[str]) -> Dict[str, float]:
    """Parse a ``Name=seconds,Name=seconds`` string into a dictionary.

    Args:
        raw: Raw override string (e.g. ``"Product=120,Order=300"``)

    Returns:
        Dictionary mapping entity or context class names to seconds

    Raises:
        ValueError: If an entry is not of the form ``Name=number``
    """
    overrides: Dict[str, float] = {}
    if not raw:
        return overrides

    for entry in raw.split(','):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, value = entry.partition('=')
        if not sep or not name.strip():
            raise ValueError(f"Invalid timeout override '{entry}', expected Name=seconds")
        overrides[name.strip()] = float(value)

    return overrides


@dataclass
class DatabaseConfig:
    """Database configuration settings.

    Attributes:
        host: PostgreSQL server hostname or IP address
        port: PostgreSQL server port number
        user: Database username
        password: Database password
        database: Target database name
    """

    host: str
    port: int
    user: str
    password: str
    database: str

    def get_connection_string(self) -> str:
        """Get PostgreSQL connection string.

        Returns:
            SQLAlchemy-compatible PostgreSQL connection string
        """
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def get_connection_params(self) -> dict:
        """Get connection parameters as dictionary.

        Returns:
            Dictionary with keys: host, port, user, password, database
        """
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database
        }


@dataclass
class BulkConfig:
    """Bulk operation settings.

    Attributes:
        command_timeout: Default per-operation timeout in seconds
        timeout_overrides: Per entity/context class name timeouts in seconds
        staging_prefix: Prefix for transient staging table names
        copy_null: Marker written for NULL values in the COPY stream
        log_level: Default log level for the bulk engine
    """

    command_timeout: float = 30.0
    timeout_overrides: Dict[str, float] = field(default_factory=dict)
    staging_prefix: str = '_bulk_stage'
    copy_null: str = '\\N'
    log_level: str = 'INFO'


class Config:
    """Centralized configuration manager.

    Provides access to all configuration settings loaded from environment
    variables (.env file).

    Attributes:
        db: DatabaseConfig instance with database connection settings
        bulk: BulkConfig instance with bulk operation settings

    Example:
        >>> config = Config()
        >>> conn_str = config.get_connection_string()
        >>> print(f"Connecting to {config.db_host}:{config.db_port}")
    """

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.db = DatabaseConfig(
            host=os.getenv('POSTGRES_HOST', 'localhost'),
            port=int(os.getenv('POSTGRES_PORT', '5432')),
            user=os.getenv('POSTGRES_USER', 'postgres'),
            password=os.getenv('POSTGRES_PASSWORD', ''),
            database=os.getenv('POSTGRES_DB', 'postgres')
        )

        self.bulk = BulkConfig(
            command_timeout=float(os.getenv('BULK_COMMAND_TIMEOUT', '30')),
            timeout_overrides=parse_timeout_overrides(os.getenv('BULK_TIMEOUTS')),
            staging_prefix=os.getenv('BULK_STAGING_PREFIX', '_bulk_stage'),
            copy_null=os.getenv('BULK_COPY_NULL', '\\N'),
            log_level=os.getenv('BULK_LOG_LEVEL', 'INFO')
        )

    @property
    def db_host(self) -> str:
        """Get database server hostname."""
        return self.db.host

    @property
    def db_port(self) -> int:
        """Get database server port number."""
        return self.db.port

    @property
    def db_user(self) -> str:
        """Get database username."""
        return self.db.user

    @property
    def db_password(self) -> str:
        """Get database password."""
        return self.db.password

    @property
    def db_name(self) -> str:
        """Get target database name."""
        return self.db.database

    def get_connection_string(self) -> str:
        """Get database connection string.

        Returns:
            SQLAlchemy-compatible PostgreSQL connection string
        """
        return self.db.get_connection_string()

    def get_connection_params(self) -> dict:
        """Get database connection parameters.

        Returns:
            Dictionary with keys: host, port, user, password, database
        """
        return self.db.get_connection_params()


# Global configuration instance
config = Config()
