"""Runtime configuration.

Two sources feed the application:

* environment variables (optionally from a ``.env`` file) for secrets,
  endpoints and limits, collected into :class:`Settings`;
* ``config/platforms.yaml`` for newsletter platforms and sanitizer strategies,
  read through a small mtime-aware cache.
"""

import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

import yaml
from dotenv import load_dotenv

from .logger import get_logger

logger = get_logger("config")

# In-memory cache for the platforms file
_config_cache = None
_config_last_modified = 0
_cache_max_age = 300  # seconds

_cache_stats = {"hits": 0, "misses": 0, "last_hit": None, "last_miss": None}


def _first_env(*names: str) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v:
            return v
    return None


def _required_env(*names: str) -> str:
    val = _first_env(*names)
    if not val:
        raise RuntimeError(f"Missing required environment variable (any of): {', '.join(names)}")
    return val


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {raw!r}")
        return default


@dataclass
class Settings:
    env: str = "development"
    database_url: str = "sqlite:///nl2kindle.db"
    artifacts_dir: str = "artifacts"

    # Inbound email
    mailgun_signing_key: str | None = None
    inbound_domain: str = "linktoreader.com"
    s3_email_bucket: str | None = None
    aws_region: str = "us-east-1"
    sns_verify_signatures: bool = True
    sns_skip_signature_verification: bool = False

    # Outbound email
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None

    # Conversion and delivery
    ebook_convert_path: str | None = None
    conversion_timeout: int = 120
    conversion_attempts: int = 3
    delivery_attempts: int = 3
    delivery_deadline: int = 600
    fetch_timeout: int = 20
    prefer_linked_articles: bool = True

    # Limits
    rate_limit_requests: int = 10
    rate_limit_window_minutes: int = 15
    starter_monthly_limit: int = 100
    pro_monthly_limit: int = 300
    download_retention_days: int = 7

    url_download_domains: List[str] = field(default_factory=lambda: ["substack.com"])

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    @property
    def skip_sns_verification(self) -> bool:
        """The SNS bypass is a development aid only and never applies in production."""
        if not self.sns_skip_signature_verification:
            return False
        if self.is_production:
            logger.warning("SNS_SKIP_SIGNATURE_VERIFICATION ignored in production")
            return False
        return True


def load_settings(env_file: str | None = None) -> Settings:
    """Build :class:`Settings` from the environment, loading ``.env`` first."""
    load_dotenv(env_file or os.path.join(os.getcwd(), ".env"))

    smtp_user = _first_env("SMTP_USER", "EMAIL_ADDRESS")
    platforms = load_platforms_config()

    settings = Settings(
        env=_first_env("ENV", "NL2KINDLE_ENV") or "development",
        database_url=_first_env("DATABASE_URL") or "sqlite:///nl2kindle.db",
        artifacts_dir=_first_env("ARTIFACTS_DIR") or "artifacts",
        mailgun_signing_key=_first_env("MAILGUN_WEBHOOK_SIGNING_KEY", "MAILGUN_SIGNING_KEY"),
        inbound_domain=_first_env("INBOUND_EMAIL_DOMAIN") or "linktoreader.com",
        s3_email_bucket=_first_env("S3_EMAIL_BUCKET"),
        aws_region=_first_env("AWS_REGION", "AWS_DEFAULT_REGION") or "us-east-1",
        sns_verify_signatures=_env_bool("SNS_VERIFY_SIGNATURES", True),
        sns_skip_signature_verification=_env_bool("SNS_SKIP_SIGNATURE_VERIFICATION", False),
        smtp_server=_first_env("SMTP_HOST", "EMAIL_SMTP_SERVER") or "smtp.gmail.com",
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_user=smtp_user,
        smtp_password=_first_env("SMTP_PASSWORD", "EMAIL_PASSWORD"),
        smtp_from=_first_env("SMTP_FROM") or smtp_user,
        ebook_convert_path=_first_env("EBOOK_CONVERT_PATH"),
        conversion_timeout=_env_int("CONVERSION_TIMEOUT", 120),
        conversion_attempts=_env_int("CONVERSION_ATTEMPTS", 3),
        delivery_attempts=_env_int("DELIVERY_ATTEMPTS", 3),
        delivery_deadline=_env_int("DELIVERY_DEADLINE", 600),
        fetch_timeout=_env_int("FETCH_TIMEOUT", 20),
        prefer_linked_articles=_env_bool("PREFER_LINKED_ARTICLES", True),
        rate_limit_requests=_env_int("RATE_LIMIT_REQUESTS", 10),
        rate_limit_window_minutes=_env_int("RATE_LIMIT_WINDOW_MINUTES", 15),
        starter_monthly_limit=_env_int("STARTER_MONTHLY_LIMIT", 100),
        pro_monthly_limit=_env_int("PRO_MONTHLY_LIMIT", 300),
        download_retention_days=_env_int("DOWNLOAD_RETENTION_DAYS", 7),
        url_download_domains=list(platforms.get("url_download_domains") or ["substack.com"]),
    )
    logger.debug(f"Settings loaded for env={settings.env}")
    return settings


# ---------------------------------------------------------------------------
# platforms.yaml
# ---------------------------------------------------------------------------
def _get_config_path() -> str:
    """Return the path to the platforms configuration file."""
    override = os.getenv("NL2KINDLE_PLATFORMS_FILE")
    if override:
        return override
    return os.path.join(os.path.dirname(__file__), "config", "platforms.yaml")


def _is_cache_valid() -> bool:
    """Check the cache against the file modification time and the maximum age."""
    if _config_cache is None:
        return False

    try:
        current_mtime = os.path.getmtime(_get_config_path())
        if current_mtime > _config_last_modified:
            logger.debug("Cache invalid: config file has been modified")
            return False

        if _cache_max_age > 0:
            cache_age = time.time() - _config_last_modified
            if cache_age > _cache_max_age:
                logger.debug(
                    f"Cache invalid: exceeded max age ({cache_age:.1f} > {_cache_max_age} seconds)"
                )
                return False

        return True
    except OSError as e:
        logger.warning(f"Error checking cache validity: {str(e)}")
        return False


def load_platforms_config() -> Dict[str, Any]:
    """Load and return the platforms configuration (cached)."""
    global _config_cache, _config_last_modified

    if _is_cache_valid() and _config_cache is not None:
        _cache_stats["hits"] += 1
        _cache_stats["last_hit"] = time.strftime("%Y-%m-%d %H:%M:%S")
        return _config_cache

    _cache_stats["misses"] += 1
    _cache_stats["last_miss"] = time.strftime("%Y-%m-%d %H:%M:%S")

    config_path = _get_config_path()
    logger.debug(f"Loading platforms configuration from {config_path}")
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load platforms config: {str(e)}")
        return {}

    if not config:
        logger.error("Loaded platforms config is empty")
        return {}

    _config_cache = config
    _config_last_modified = time.time()
    return config


def get_newsletter_domains() -> List[str]:
    return [d.lower() for d in load_platforms_config().get("newsletter_domains", [])]


def get_strategy_definitions() -> Dict[str, Dict[str, Any]]:
    return load_platforms_config().get("strategies", {}) or {}


def reset_config_cache() -> None:
    """Drop the cached platforms configuration."""
    global _config_cache, _config_last_modified
    _config_cache = None
    _config_last_modified = 0
    logger.debug("Platforms config cache reset")


def get_cache_stats() -> Dict[str, Any]:
    stats = dict(_cache_stats)
    stats["cached"] = _config_cache is not None
    return stats


__all__ = [
    "Settings",
    "load_settings",
    "load_platforms_config",
    "get_newsletter_domains",
    "get_strategy_definitions",
    "reset_config_cache",
    "get_cache_stats",
]
