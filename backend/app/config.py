from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".stratly"
AI_PROVIDERS: frozenset[str] = frozenset({"auto", "openai", "gemini"})
YOUTUBE_READONLY_SCOPE = "https://www.googleapis.com/auth/youtube.readonly"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{STRATLY_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `STRATLY_*` environment variable (or `.env`).
    Google OAuth client credentials are mandatory at runtime; AI provider keys
    are optional and their absence switches analyses into demo mode.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRATLY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the SQLite database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL of this API; used to build the OAuth redirect URI.",
    )
    dashboard_base_url: str = Field(
        default="http://localhost:3000",
        description="Public base URL of the dashboard; OAuth callback outcomes redirect here.",
    )

    # Google OAuth.
    google_client_id: str | None = Field(
        default=None,
        description="OAuth client id of the Google Cloud web application.",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret of the Google Cloud web application.",
    )
    google_auth_uri: str = Field(
        default="https://accounts.google.com/o/oauth2/auth",
        description="Google authorization endpoint.",
    )
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google token endpoint used for code exchange and token refresh.",
    )
    youtube_oauth_scopes: tuple[str, ...] = Field(
        default=(YOUTUBE_READONLY_SCOPE,),
        description="Scopes requested during channel connection (read-only analytics).",
    )
    youtube_token_refresh_skew_seconds: int = Field(
        default=60,
        ge=0,
        description="Refresh access tokens this many seconds before their recorded expiry.",
    )

    # Import pipeline.
    youtube_import_video_limit: int = Field(
        default=30,
        ge=1,
        le=500,
        description="Maximum number of recent uploads fetched per import run.",
    )
    youtube_import_worker_count: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Worker threads available for background import tasks.",
    )

    # Outbound retry policy.
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout applied to every outbound HTTP request.",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for rate-limited or network-failed outbound calls.",
    )
    retry_base_delay_ms: int = Field(
        default=1_000,
        ge=0,
        description="Base delay of the exponential backoff applied to rate-limit responses.",
    )
    retry_max_delay_ms: int = Field(
        default=16_000,
        ge=0,
        description="Cap on a single rate-limit backoff delay.",
    )
    retry_network_delay_ms: int = Field(
        default=500,
        ge=0,
        description="Step of the linear backoff applied to network-level failures.",
    )

    # AI analysis.
    ai_provider: Literal["auto", "openai", "gemini"] = Field(
        default="auto",
        description=(
            "LLM provider for analyses. `auto` prefers OpenAI when its key is set, "
            "then Gemini; without any key analyses run in demo mode."
        ),
    )
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key. Optional.",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI chat completion model.",
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API base URL.",
    )
    gemini_api_key: str | None = Field(
        default=None,
        description="Gemini API key. Optional.",
    )
    gemini_model: str = Field(
        default="gemini-1.5-flash",
        description="Gemini generateContent model.",
    )
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini API base URL.",
    )
    ai_analysis_cache_ttl_hours: int = Field(
        default=24,
        ge=0,
        description="Lifetime of a cached channel analysis per (user, channel).",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @property
    def youtube_redirect_uri(self) -> str:
        return f"{self.app_base_url}/api/youtube/callback"

    @field_validator("ai_provider", mode="before")
    @classmethod
    def _normalize_ai_provider(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("STRATLY_AI_PROVIDER must be a string.")
        normalized = value.strip().lower()
        if normalized in AI_PROVIDERS:
            return normalized
        raise ValueError("STRATLY_AI_PROVIDER must be set to: auto, openai, gemini.")

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("STRATLY_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("STRATLY_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(
        "app_base_url",
        "dashboard_base_url",
        "google_auth_uri",
        "google_token_uri",
        "openai_base_url",
        "gemini_base_url",
        mode="before",
    )
    @classmethod
    def _normalize_base_urls(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"STRATLY_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(
        "google_client_id",
        "google_client_secret",
        "openai_api_key",
        "gemini_api_key",
        mode="before",
    )
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_oauth_configuration(
    *,
    google_client_id: str | None,
    google_client_secret: str | None,
) -> None:
    errors: list[str] = []

    if google_client_id is None:
        errors.append("STRATLY_GOOGLE_CLIENT_ID is required to connect YouTube channels.")
    if google_client_secret is None:
        errors.append("STRATLY_GOOGLE_CLIENT_SECRET is required to connect YouTube channels.")

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(
            "Invalid configuration for Google OAuth:\n"
            f"{bullets}"
        )


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(*, validate_oauth_secrets: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_oauth_secrets:
        _validate_oauth_configuration(
            google_client_id=settings.google_client_id,
            google_client_secret=settings.google_client_secret,
        )

    return settings
