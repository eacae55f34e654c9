import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    weight_tolerance_kg: float
    default_material_type: str
    max_upload_mb: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///replay.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        weight_tolerance_kg=float(_getenv("WEIGHT_TOLERANCE_KG", "0.01")),
        default_material_type=_getenv("DEFAULT_MATERIAL_TYPE", "PCR").upper(),
        max_upload_mb=int(_getenv("MAX_UPLOAD_MB", "25")),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        # import reconciliation
        "WEIGHT_TOLERANCE_KG": s.weight_tolerance_kg,
        "DEFAULT_MATERIAL_TYPE": s.default_material_type,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # spreadsheet upload limit
        "MAX_CONTENT_LENGTH": s.max_upload_mb * 1024 * 1024,
    }
