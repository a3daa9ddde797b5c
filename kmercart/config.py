import os
from datetime import timedelta
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

PACKAGE_ROOT = os.path.dirname(os.path.abspath(__file__))

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
]


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw_value = _env(name)
    try:
        return int(raw_value) if raw_value else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw_value = _env(name)
    try:
        return float(raw_value) if raw_value else default
    except (TypeError, ValueError):
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw_value = _env(name).lower()
    if not raw_value:
        return default
    return raw_value in {"1", "true", "yes", "on"}


def _cors_origins() -> List[str]:
    origins = list(DEFAULT_CORS_ORIGINS)
    frontend_url = _env("FRONTEND_URL")
    if frontend_url:
        origins.append(frontend_url)
    cors_extra = _env("CORS_ALLOWED_ORIGINS")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                origins.append(trimmed)
    return [origin for origin in origins if origin]


def load_config() -> Dict[str, object]:
    """Build the Flask configuration mapping from the environment."""
    jwt_secret = _env("JWT_SECRET_KEY") or _env("JWT_SECRET") or "change-me-in-production"
    api_prefix = "/" + _env("API_PREFIX", "/api/v1").strip("/")
    throttle_ttl = max(_env_int("THROTTLE_TTL", 60), 1)
    throttle_limit = max(_env_int("THROTTLE_LIMIT", 100), 1)
    max_upload_mb = _env_int("MAX_UPLOAD_SIZE_MB", 16)

    return {
        "SECRET_KEY": jwt_secret,
        "JWT_SECRET_KEY": jwt_secret,
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(
            minutes=_env_int("JWT_ACCESS_EXPIRES_MINUTES", 15)
        ),
        "JWT_REFRESH_TOKEN_EXPIRES": timedelta(
            days=_env_int("JWT_REFRESH_EXPIRES_DAYS", 7)
        ),
        "MONGO_URI": _env("MONGO_URI")
        or _env("MONGODB_URI")
        or "mongodb://localhost:27017/kmercart",
        "CORS_ORIGINS": _cors_origins(),
        "RATELIMIT_ENABLED": _env_flag("RATELIMIT_ENABLED", True),
        "RATELIMIT_DEFAULT": f"{throttle_limit} per {throttle_ttl} seconds",
        "RATELIMIT_STORAGE_URI": _env("RATELIMIT_STORAGE_URI", "memory://"),
        "API_PREFIX": api_prefix,
        "PUBLIC_API_URL": _env("PUBLIC_API_URL"),
        "UPLOAD_FOLDER": _env("UPLOAD_FOLDER") or os.path.join(PACKAGE_ROOT, "uploads"),
        "ALLOWED_IMAGE_EXTENSIONS": {"png", "jpg", "jpeg", "gif", "webp"},
        "MAX_CONTENT_LENGTH": max_upload_mb * 1024 * 1024,
        "TAX_RATE": _env_float("TAX_RATE", 0.08),
        "DEFAULT_CURRENCY": _env("DEFAULT_CURRENCY", "CFA"),
        "BCRYPT_ROUNDS": _env_int("BCRYPT_ROUNDS", 12),
        "LOG_LEVEL": _env("LOG_LEVEL", "INFO").upper(),
        "TRUSTED_PROXY_HOPS": max(0, _env_int("TRUSTED_PROXY_HOPS", 1)),
    }
