"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no keys in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class SupabaseConfig(BaseModel):
    """Hosted backend (Postgres + Auth + Edge Functions) connection settings."""

    url: str = Field(..., description="Project URL, e.g. https://<ref>.supabase.co")
    anon_key: str = Field(..., description="Public anon key used by clients")
    service_role_key: str | None = Field(
        None, description="Service role key; only the endpoint handlers need it"
    )
    resend_api_key: str | None = Field(
        None, description="Email delivery key; without it login codes are returned (dev mode)"
    )
    functions_path: str = Field(default="/functions/v1", description="Edge function prefix")
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)

    @field_validator("url")
    def validate_url(cls, v):
        if not v:
            raise ValueError("SUPABASE_URL must be set in environment or .env file")
        if not v.startswith(("https://", "http://")):
            raise ValueError("SUPABASE_URL must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("anon_key")
    def validate_anon_key(cls, v):
        if not v or v == "your-anon-key-here":
            raise ValueError("SUPABASE_ANON_KEY must be set in environment or .env file")
        return v

    @property
    def functions_url(self) -> str:
        return f"{self.url}{self.functions_path}"


class CacheConfig(BaseModel):
    """Service worker cache generation and shell manifest."""

    version_tag: str = Field(default="tamoxifen-tracker-v1", min_length=1)
    scope_url: str = Field(
        default="http://localhost:8000/", description="Worker scope the manifest resolves against"
    )
    shell_assets: list[str] = Field(
        default_factory=lambda: [
            "./",
            "./index.html",
            "./demo.html",
            "./tracker.js",
            "./manifest.json",
            "./icon-192.png",
            "./icon-512.png",
        ]
    )
    # Carry auth-sensitive UI, so always try the network first
    critical_files: frozenset[str] = Field(
        default_factory=lambda: frozenset({"index.html", "tracker.js"})
    )

    @field_validator("scope_url")
    def scope_is_directory(cls, v):
        return v if v.endswith("/") else v + "/"


class SharingConfig(BaseModel):
    """Expiry windows for share links, invites and login codes."""

    app_base_url: str = Field(default="http://localhost:8000/")
    share_link_expiry_days: int = Field(default=7, gt=0)
    summary_window_days: int = Field(default=90, gt=0)
    invite_expiry_days: int = Field(default=7, gt=0)
    login_code_ttl_minutes: int = Field(default=10, gt=0)
    top_symptoms_limit: int = Field(default=10, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    supabase: SupabaseConfig
    cache: CacheConfig
    sharing: SharingConfig
    logging: LoggingConfig

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _optional(name: str) -> str | None:
        return os.getenv(name) or None

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    supabase_config = SupabaseConfig(
        url=os.getenv("SUPABASE_URL", ""),
        anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
        # Edge runtime historically exposes either name
        service_role_key=_optional("SERVICE_ROLE_KEY") or _optional("SUPABASE_SERVICE_ROLE_KEY"),
        resend_api_key=_optional("RESEND_API_KEY"),
    )

    cache_config = CacheConfig(
        version_tag=os.getenv("CACHE_VERSION", "tamoxifen-tracker-v1"),
        scope_url=os.getenv("APP_BASE_URL", "http://localhost:8000/"),
    )

    sharing_config = SharingConfig(
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:8000/"),
        share_link_expiry_days=int(os.getenv("SHARE_LINK_EXPIRY_DAYS", "7")),
        summary_window_days=int(os.getenv("SUMMARY_WINDOW_DAYS", "90")),
        invite_expiry_days=int(os.getenv("INVITE_EXPIRY_DAYS", "7")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        supabase=supabase_config,
        cache=cache_config,
        sharing=sharing_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"✅ Configuration loaded for {config.environment} environment")

        if config.supabase.service_role_key:
            print("✅ Service role key configured (endpoint handlers enabled)")

        if not config.supabase.resend_api_key:
            print("⚠️  No email key configured: login codes are returned in responses")

    except Exception as e:
        print(f"❌ Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\n☁️  BACKEND")
    print(f"Supabase URL: {config.supabase.url}")
    print(f"Functions: {config.supabase.functions_url}")

    print("\n📦 OFFLINE CACHE")
    print(f"Generation: {config.cache.version_tag}")
    print(f"Shell assets: {len(config.cache.shell_assets)}")
    print(f"Network-first files: {', '.join(sorted(config.cache.critical_files))}")

    print("\n🔗 SHARING")
    print(f"App URL: {config.sharing.app_base_url}")
    print(f"Share link expiry: {config.sharing.share_link_expiry_days}d")
    print(f"Doctor summary window: {config.sharing.summary_window_days}d")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
