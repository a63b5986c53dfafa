"""Database settings for the access-control store.

SQLite is the default (local development and the test suite); PostgreSQL is
used in deployed environments. Every field reads from a ``DB_`` variable.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url


class DatabaseSettings(BaseSettings):
    """
    Where the entity and grant tables live and how connections are pooled.

    Either set ``DB_URL_OVERRIDE`` to a complete SQLAlchemy URL, or give the
    parts::

        DB_DRIVER=postgresql+psycopg2
        DB_HOST=db.internal
        DB_NAME=analytics_hub
        DB_USER=hub
        DB_PASSWORD=...
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    driver: str = Field(default="sqlite", description="SQLAlchemy drivername")
    url_override: Optional[str] = Field(
        default=None,
        description="Full URL; when set the individual parts are ignored"
    )

    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    name: str = Field(default="analytics_hub", description="Database (schema) name")
    user: str = Field(default="")
    password: str = Field(default="")

    sqlite_path: Path = Field(
        default=Path("data/access_control.db"),
        description="File used when the driver is sqlite"
    )

    # Pool (ignored for SQLite)
    pool_size: int = Field(default=10, ge=1, le=100)
    max_overflow: int = Field(default=20, ge=0, le=100)
    pool_timeout: int = Field(default=30, ge=1, description="Seconds to wait for a free connection")
    pool_recycle: int = Field(default=1800, ge=60, description="Connection lifetime in seconds")
    pool_pre_ping: bool = Field(default=True)

    echo_sql: bool = Field(default=False, description="Echo SQL through the sqlalchemy.engine logger")
    query_timeout: int = Field(
        default=30,
        ge=1,
        description="Statement timeout (PostgreSQL) or lock wait (SQLite), seconds"
    )

    @computed_field
    @property
    def url(self) -> str:
        """SQLAlchemy URL for the sync engine."""
        if self.url_override:
            return self.url_override

        if self.driver.lower().startswith("sqlite"):
            return f"sqlite:///{self.sqlite_path.absolute()}"

        return URL.create(
            self.driver,
            username=self.user or None,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.name,
        ).render_as_string(hide_password=False)

    @property
    def backend(self) -> str:
        return make_url(self.url).get_backend_name()

    @computed_field
    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"

    @computed_field
    @property
    def is_postgres(self) -> bool:
        return self.backend == "postgresql"

    def get_connect_args(self) -> dict:
        """DBAPI ``connect_args`` for the configured backend."""
        if self.is_sqlite:
            # Sessions are handed across threads by the service layer
            return {"check_same_thread": False, "timeout": self.query_timeout}
        if self.is_postgres:
            return {"options": f"-c statement_timeout={self.query_timeout * 1000}"}
        return {}


@lru_cache
def get_database_settings() -> DatabaseSettings:
    """Process-wide settings, read once from the environment."""
    return DatabaseSettings()
