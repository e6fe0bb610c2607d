"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and application settings.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=3000, alias="API_PORT")
    api_debug: bool = Field(default=False, alias="API_DEBUG")
    cors_allowed_origins: str = Field(
        default="",
        alias="CORS_ALLOWED_ORIGINS",
        description="Comma-separated list of allowed CORS origins (empty = none, or * in debug)",
    )

    # Data root: certificates, generated gateway config, records and the database live here
    data_dir: str = Field(default="./data", alias="DATA_DIR")

    # NGINX binary and operations
    nginx_binary: str = Field(default="nginx", alias="NGINX_BINARY")
    nginx_operation_timeout: int = Field(
        default=30, alias="NGINX_OPERATION_TIMEOUT", description="Timeout in seconds for nginx -t / -s reload"
    )
    staging_dir: str = Field(
        default="",
        alias="STAGING_DIR",
        description="Directory for candidate configuration trees (defaults to <DATA_DIR>/staging)",
    )

    # Gateway layout
    stream_listen_port: int = Field(
        default=443, alias="STREAM_LISTEN_PORT", description="Public port routed by SNI in the stream block"
    )
    https_backend_port: int = Field(
        default=444,
        alias="HTTPS_BACKEND_PORT",
        description="Local port HTTP sites listen on; default target for unmatched SNI names",
    )
    proxy_login_url: str = Field(
        default="", alias="PROXY_LOGIN_URL", description="Login page used when a site has auth enabled"
    )
    proxy_auth_validate_url: str = Field(
        default="http://127.0.0.1:3000/api/auth/nginx",
        alias="PROXY_AUTH_VALIDATE_URL",
        description="Endpoint nginx auth_request calls to validate a session",
    )

    # nginx.conf template defaults
    worker_processes: str = Field(default="auto", alias="NGINX_WORKER_PROCESSES")
    worker_connections: int = Field(default=1024, alias="NGINX_WORKER_CONNECTIONS")
    keepalive: int = Field(default=65, alias="NGINX_KEEPALIVE")
    client_max_body_size: str = Field(default="100m", alias="NGINX_CLIENT_MAX_BODY_SIZE")
    gzip: bool = Field(default=True, alias="NGINX_GZIP")
    server_tokens: bool = Field(default=False, alias="NGINX_SERVER_TOKENS")

    # ACME client (lego) Configuration
    lego_binary: str = Field(default="lego", alias="LEGO_BINARY")
    acme_timeout: int = Field(
        default=300, alias="ACME_TIMEOUT", description="Timeout in seconds for one lego invocation"
    )
    acme_account_email: str = Field(
        default="", alias="ACME_ACCOUNT_EMAIL", description="Email used by the background renewal sweep"
    )
    acme_cleanup_hook: str = Field(
        default="",
        alias="ACME_CLEANUP_HOOK",
        description="Optional executable that removes stale _acme-challenge records",
    )
    cert_renewal_check_hours: int = Field(
        default=12, alias="CERT_RENEWAL_CHECK_HOURS", description="Hours between renewal sweeps"
    )

    # Credential encryption
    credential_encryption_key: str | None = Field(
        default=None,
        alias="CREDENTIAL_ENCRYPTION_KEY",
        description="Passphrase used to encrypt DNS provider credentials at rest",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def get_data_dir() -> Path:
    """Get the data root directory."""
    return Path(settings.data_dir).resolve()


def get_nginx_root() -> Path:
    """Get the live gateway configuration root (holds nginx.conf)."""
    return get_data_dir() / "nginx"


def get_ssl_dir() -> Path:
    """Get the directory holding issued certificate material."""
    return get_nginx_root() / "ssl"


def get_lego_dir() -> Path:
    """Get the ACME client working directory."""
    return get_data_dir() / "lego"


def get_staging_dir() -> Path:
    """Get the directory used for staged candidate configuration."""
    if settings.staging_dir:
        return Path(settings.staging_dir)
    return get_data_dir() / "staging"


def get_database_path() -> Path:
    """Get the SQLite database path."""
    return get_data_dir() / "gateway.db"


def ensure_directories():
    """Ensure required directories exist."""
    dirs_to_create = [
        get_data_dir(),
        get_nginx_root() / "conf.d",
        get_nginx_root() / "stream",
        get_ssl_dir(),
        get_lego_dir(),
        get_staging_dir(),
        get_data_dir() / "sites",
        get_data_dir() / "routes",
    ]

    for dir_path in dirs_to_create:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
