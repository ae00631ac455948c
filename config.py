"""Configuration management for the Dorfkoenig scout service.

This module provides centralized configuration for all service components.
All settings are loaded from environment variables with sensible defaults.

Environment Variables:
    Language model (OpenRouter, OpenAI-compatible):
        OPENROUTER_API_KEY: API key for chat completions and embeddings
        OPENROUTER_BASE_URL: API base URL
        CHAT_MODEL: Model for criteria analysis and unit extraction
        DRAFT_MODEL: Model for newsletter draft generation
        EMBEDDING_MODEL: Embedding model ('local:<name>' for sentence-transformers)

    Scraping (Firecrawl):
        FIRECRAWL_API_KEY: API key
        FIRECRAWL_BASE_URL: API base URL
        SCRAPE_TIMEOUT_SECONDS: Timeout for a single scrape call

    Notifications:
        RESEND_API_KEY: Resend API key for scout alert emails
        EMAIL_FROM: Sender address for alert emails
        WHATSAPP_PHONE_NUMBER_ID: WhatsApp Business phone number id
        WHATSAPP_API_TOKEN: WhatsApp Business API token
        WHATSAPP_APP_SECRET: Shared secret for webhook signatures
        WHATSAPP_WEBHOOK_VERIFY_TOKEN: Token for the webhook GET handshake
        WHATSAPP_TEMPLATE_NAME: Template with confirm/reject buttons
        BAJOUR_CORRESPONDENTS: JSON mapping village_id -> [{name, phone}]

    Pipeline Behavior:
        LANGUAGE: Prompt/output language ('de' or 'en')
        DB_PATH: SQLite database file path
        RUN_LOCK_MINUTES: Window for the "one running execution" check
        DUPLICATE_THRESHOLD: Similarity for cross-execution duplicates
        DUPLICATE_LOOKBACK_DAYS: History window for duplicate detection
        UNIT_DEDUP_THRESHOLD: Similarity for in-batch unit dedup
        VERIFICATION_TIMEOUT_HOURS: Hours until unanswered drafts auto-confirm

    Server:
        HOST / PORT: Bind address for the HTTP server

    Optional Features:
        ENABLE_LOGFIRE: Enable Logfire/OpenTelemetry tracing

    Logging:
        LOG_LEVEL: Logging verbosity (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        LOG_BACKUP_COUNT: Number of rotated log files to keep
        LOG_MAX_BYTES: Max log file size in bytes (0 = time-based rotation)
        LOG_FORMAT: Log format ('text' or 'json' for structured logging)
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


def _env(key: str, default: str = "") -> str:
    """Get string environment variable with optional default.

    Args:
        key: Environment variable name
        default: Value to return if not set

    Returns:
        Environment variable value or default
    """
    return os.environ.get(key, default)


def _env_int(key: str, default: int) -> int:
    """Get integer environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as integer
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: '{val}'")


def _env_float(key: str, default: float) -> float:
    """Get float environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as float
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: '{val}'")


def _env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable with default.

    Recognizes truthy values: '1', 'true', 'yes', 'on'
    Recognizes falsy values: '0', 'false', 'no', 'off'
    """
    val = os.environ.get(key, "").lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


def parse_correspondents(raw: str) -> dict[str, list[dict[str, str]]]:
    """Parse the BAJOUR_CORRESPONDENTS JSON value.

    Args:
        raw: JSON object mapping village_id to a list of {name, phone}

    Returns:
        Mapping of village id to correspondent dicts (empty if raw is blank)

    Raises:
        ValueError: If the value is not a JSON object of correspondent lists
    """
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in BAJOUR_CORRESPONDENTS: {e}")
    if not isinstance(data, dict):
        raise ValueError("BAJOUR_CORRESPONDENTS must be a JSON object")

    result: dict[str, list[dict[str, str]]] = {}
    for village_id, entries in data.items():
        if not isinstance(entries, list):
            raise ValueError(f"Correspondents for '{village_id}' must be a list")
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("phone"):
                raise ValueError(f"Correspondent for '{village_id}' needs a phone number")
        result[village_id] = [
            {"name": str(e.get("name", "")), "phone": str(e["phone"])} for e in entries
        ]
    return result


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    All settings can be overridden via environment variables. Use Config.load()
    to create an instance with values from the environment.

    Example:
        >>> config = Config.load()
        >>> if error := config.validate():
        ...     print(f"Config error: {error}")
    """

    # === Language Model (OpenRouter) ===
    openrouter_api_key: str = ""  # OPENROUTER_API_KEY
    openrouter_base_url: str = "https://openrouter.ai/api/v1"  # OPENROUTER_BASE_URL
    chat_model: str = "openai/gpt-4o-mini"  # CHAT_MODEL - analysis + extraction
    draft_model: str = "openai/gpt-4o-mini"  # DRAFT_MODEL - newsletter drafts
    embedding_model: str = "openai/text-embedding-3-small"  # EMBEDDING_MODEL

    # === Scraping (Firecrawl) ===
    firecrawl_api_key: str = ""  # FIRECRAWL_API_KEY
    firecrawl_base_url: str = "https://api.firecrawl.dev/v2"  # FIRECRAWL_BASE_URL
    scrape_timeout_seconds: int = 60  # SCRAPE_TIMEOUT_SECONDS

    # === Email (Resend) ===
    resend_api_key: str = ""  # RESEND_API_KEY
    email_from: str = "Dorfkoenig <noreply@labs.wepublish.cloud>"  # EMAIL_FROM

    # === WhatsApp Business ===
    whatsapp_phone_number_id: str = ""  # WHATSAPP_PHONE_NUMBER_ID
    whatsapp_api_token: str = ""  # WHATSAPP_API_TOKEN
    whatsapp_app_secret: str = ""  # WHATSAPP_APP_SECRET - webhook HMAC key
    whatsapp_verify_token: str = ""  # WHATSAPP_WEBHOOK_VERIFY_TOKEN
    whatsapp_template_name: str = "bajour_draft_verification"  # WHATSAPP_TEMPLATE_NAME

    # village_id -> [{"name": ..., "phone": ...}]
    correspondents: dict[str, list[dict[str, str]]] = field(default_factory=dict)
    correspondents_error: str = ""  # Parse error for BAJOUR_CORRESPONDENTS, if any

    # === Output Settings ===
    language: str = "de"  # LANGUAGE - 'de' (German) or 'en' (English)

    # === Database ===
    db_path: Path = field(default_factory=lambda: Path("dorfkoenig.db"))  # DB_PATH

    # === Pipeline Behavior ===
    run_lock_minutes: int = 10  # RUN_LOCK_MINUTES
    duplicate_threshold: float = 0.85  # DUPLICATE_THRESHOLD
    duplicate_lookback_days: int = 30  # DUPLICATE_LOOKBACK_DAYS
    unit_dedup_threshold: float = 0.75  # UNIT_DEDUP_THRESHOLD
    verification_timeout_hours: float = 2.0  # VERIFICATION_TIMEOUT_HOURS

    # === Server ===
    host: str = "0.0.0.0"  # HOST
    port: int = 8080  # PORT

    # === Output Directories ===
    log_dir: Path = field(default_factory=lambda: Path("log"))  # LOG_DIR

    # === Logging Configuration ===
    log_level: str = "INFO"  # LOG_LEVEL - DEBUG, INFO, WARNING, ERROR
    log_backup_count: int = 30  # LOG_BACKUP_COUNT - Number of rotated logs to keep
    log_max_bytes: int = 0  # LOG_MAX_BYTES - Max file size (0 = time-based rotation)
    log_format: str = "text"  # LOG_FORMAT - 'text' or 'json' for structured logging

    # === Optional: Observability ===
    # Requires: pip install logfire
    enable_logfire: bool = False  # ENABLE_LOGFIRE - Enable distributed tracing
    logfire_token: str = ""  # LOGFIRE_TOKEN - Authentication token

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment variables."""
        correspondents: dict[str, list[dict[str, str]]] = {}
        correspondents_error = ""
        try:
            correspondents = parse_correspondents(_env("BAJOUR_CORRESPONDENTS"))
        except ValueError as e:
            correspondents_error = str(e)

        return cls(
            openrouter_api_key=_env("OPENROUTER_API_KEY"),
            openrouter_base_url=_env("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
            chat_model=_env("CHAT_MODEL", "openai/gpt-4o-mini"),
            draft_model=_env("DRAFT_MODEL", "openai/gpt-4o-mini"),
            embedding_model=_env("EMBEDDING_MODEL", "openai/text-embedding-3-small"),
            firecrawl_api_key=_env("FIRECRAWL_API_KEY"),
            firecrawl_base_url=_env("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev/v2"),
            scrape_timeout_seconds=_env_int("SCRAPE_TIMEOUT_SECONDS", 60),
            resend_api_key=_env("RESEND_API_KEY"),
            email_from=_env("EMAIL_FROM", "Dorfkoenig <noreply@labs.wepublish.cloud>"),
            whatsapp_phone_number_id=_env("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_api_token=_env("WHATSAPP_API_TOKEN"),
            whatsapp_app_secret=_env("WHATSAPP_APP_SECRET"),
            whatsapp_verify_token=_env("WHATSAPP_WEBHOOK_VERIFY_TOKEN"),
            whatsapp_template_name=_env("WHATSAPP_TEMPLATE_NAME", "bajour_draft_verification"),
            correspondents=correspondents,
            correspondents_error=correspondents_error,
            language=_env("LANGUAGE", "de").lower(),
            db_path=Path(_env("DB_PATH", "dorfkoenig.db")),
            run_lock_minutes=_env_int("RUN_LOCK_MINUTES", 10),
            duplicate_threshold=_env_float("DUPLICATE_THRESHOLD", 0.85),
            duplicate_lookback_days=_env_int("DUPLICATE_LOOKBACK_DAYS", 30),
            unit_dedup_threshold=_env_float("UNIT_DEDUP_THRESHOLD", 0.75),
            verification_timeout_hours=_env_float("VERIFICATION_TIMEOUT_HOURS", 2.0),
            host=_env("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            log_dir=Path(_env("LOG_DIR", "log")),
            enable_logfire=_env_bool("ENABLE_LOGFIRE", False),
            logfire_token=_env("LOGFIRE_TOKEN"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 30),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 0),
            log_format=_env("LOG_FORMAT", "text").lower(),
        )

    def validate(self) -> str | None:
        """Validate configuration for required fields and valid values.

        Checks:
            - OPENROUTER_API_KEY is set
            - BAJOUR_CORRESPONDENTS parsed cleanly
            - Language is 'de' or 'en'
            - Thresholds are within [0, 1] and windows are positive

        Returns:
            Error message string if invalid, None if valid.
        """
        if not self.openrouter_api_key:
            return "OPENROUTER_API_KEY environment variable is required"
        if self.correspondents_error:
            return self.correspondents_error
        if self.language not in ("de", "en"):
            return f"Invalid LANGUAGE '{self.language}' - must be 'de' or 'en'"
        for name, value in (
            ("DUPLICATE_THRESHOLD", self.duplicate_threshold),
            ("UNIT_DEDUP_THRESHOLD", self.unit_dedup_threshold),
        ):
            if not 0.0 <= value <= 1.0:
                return f"{name} must be between 0 and 1"
        if self.run_lock_minutes <= 0:
            return "RUN_LOCK_MINUTES must be positive"
        if self.duplicate_lookback_days <= 0:
            return "DUPLICATE_LOOKBACK_DAYS must be positive"
        if self.verification_timeout_hours <= 0:
            return "VERIFICATION_TIMEOUT_HOURS must be positive"
        if self.scrape_timeout_seconds <= 0:
            return "SCRAPE_TIMEOUT_SECONDS must be positive"
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return f"Invalid LOG_LEVEL '{self.log_level}' - must be DEBUG, INFO, WARNING, ERROR, or CRITICAL"
        if self.log_format not in ("text", "json"):
            return f"Invalid LOG_FORMAT '{self.log_format}' - must be 'text' or 'json'"
        if self.log_backup_count < 0:
            return "LOG_BACKUP_COUNT must be non-negative"
        if self.log_max_bytes < 0:
            return "LOG_MAX_BYTES must be non-negative"
        return None
