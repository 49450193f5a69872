# kubi_pipeline/db_config.py
"""Database configuration and connection string management"""
from dataclasses import dataclass
from urllib.parse import quote_plus, urlparse

from kubi_pipeline.config import Settings

SUPPORTED_SCHEMES = ('postgresql', 'postgresql+psycopg2', 'sqlite')


@dataclass
class DatabaseCredentials:
    """Database credentials container with validation"""
    host: str
    port: str
    name: str
    user: str
    password: str
    ssl_mode: str = 'prefer'

    def to_connection_string(self) -> str:
        """Generate database connection string with proper escaping"""
        return (
            f"postgresql://{quote_plus(self.user)}:{quote_plus(self.password)}"
            f"@{self.host}:{self.port}/{self.name}?sslmode={self.ssl_mode}"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> 'DatabaseCredentials':
        """Create credentials from the DB_* settings"""
        return cls(
            host=settings.DB_HOST,
            port=settings.DB_PORT,
            name=settings.DB_NAME,
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            ssl_mode=settings.DB_SSL_MODE
        )

    @classmethod
    def validate_url(cls, url: str) -> bool:
        """Validate database URL scheme and presence of a database name"""
        try:
            parsed = urlparse(url)
            if parsed.scheme not in SUPPORTED_SCHEMES:
                return False
            if parsed.scheme == 'sqlite':
                return True
            return bool(parsed.hostname) and bool(parsed.path.lstrip('/'))
        except ValueError:
            return False


class DatabaseManager:
    """Resolves the ledger database URL from settings"""

    @classmethod
    def initialize_from_settings(cls, settings: Settings) -> str:
        """
        Resolve the database connection string

        Returns:
            Database connection string

        Raises:
            ValueError: If neither DATABASE_URL nor DB_PASSWORD is usable
        """
        if settings.DATABASE_URL:
            if not DatabaseCredentials.validate_url(settings.DATABASE_URL):
                raise ValueError("DATABASE_URL is not a supported database URL")
            return settings.DATABASE_URL

        if not settings.DB_PASSWORD:
            raise ValueError("DATABASE_URL or DB_PASSWORD setting is required")

        return DatabaseCredentials.from_settings(settings).to_connection_string()
