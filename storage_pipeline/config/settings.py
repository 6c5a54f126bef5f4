"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Object storage credentials are deliberately NOT part of these settings.
Operators manage them through the dashboard, so they live in the metadata
store's settings record and are read once per job (see CredentialProvider).
"""

from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "Storage Pipeline API"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Using a list enables key rotation without downtime."
    )

    # Snowflake (metadata store) Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_database: str = Field(
        default="PATERBROWN",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="PUBLIC",
        description="Snowflake schema holding the file, image and settings tables"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use the in-memory metadata store instead of Snowflake. Enables local dev without DB."
    )

    # Object Storage (new backend) Configuration
    storage_bucket_name: str = Field(
        default="paterbrown-storage",
        description="Bucket that receives uploads, migrated files and derivatives"
    )
    storage_public_url_base: str = Field(
        default="https://pub-4061a33a9b314588bf9fc24f750ecf89.r2.dev",
        description="Static public base URL; public_url = base + '/' + key"
    )
    storage_region: str = Field(
        default="auto",
        description="SigV4 signing region. R2 uses 'auto'."
    )
    storage_mock_mode: bool = Field(
        default=False,
        description="Use in-memory object storage instead of the S3-compatible endpoint."
    )

    # Legacy Storage Configuration
    legacy_storage_url: str = Field(
        default="",
        description="Base URL of the legacy storage backend (e.g. https://<project>.supabase.co)"
    )
    legacy_storage_service_key: str = Field(
        default="",
        description="Service key used as bearer token for the legacy storage API"
    )
    legacy_documents_bucket: str = Field(
        default="internal-documents",
        description="Legacy bucket holding document files"
    )
    legacy_images_bucket: str = Field(
        default="picks-images",
        description="Legacy bucket holding image files"
    )

    # Job Behavior
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for every storage request and metadata statement. Timeouts count as per-item errors."
    )
    thumbnail_max_dimension: int = Field(
        default=400,
        description="Bounding box (px) for thumbnail derivatives. Sized for grid views."
    )
    thumbnail_quality: float = Field(
        default=0.75,
        description="WebP quality (0-1) for thumbnails"
    )
    preview_max_dimension: int = Field(
        default=1600,
        description="Bounding box (px) for preview derivatives. Sized for the lightbox."
    )
    preview_quality: float = Field(
        default=0.8,
        description="WebP quality (0-1) for previews"
    )
    max_upload_size_mb: int = Field(
        default=50,
        description="Maximum decoded size of a single direct upload in MB."
    )
    presign_expiry_seconds: int = Field(
        default=3600,
        description="Validity of presigned upload URLs"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:8080",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def storage_public_domain(self) -> str:
        """
        Host part of the public base URL.

        A file path containing this domain already lives on the new backend.
        """
        return urlsplit(self.storage_public_url_base).netloc

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on whether we're in mock mode.
        """
        missing = []

        # Snowflake only required if not in mock mode
        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            # Need either password or private key
            if not self.snowflake_password and not self.snowflake_private_key_path:
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if not self.storage_public_url_base:
            missing.append("STORAGE_PUBLIC_URL_BASE")

        # Legacy storage is only reachable outside mock mode
        if not self.storage_mock_mode:
            if not self.legacy_storage_url:
                missing.append("LEGACY_STORAGE_URL")
            if not self.legacy_storage_service_key:
                missing.append("LEGACY_STORAGE_SERVICE_KEY")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    This is safe because settings don't change during runtime.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
