import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    log_level: str
    log_json: bool
    log_request_body: bool
    log_response_body: bool
    log_max_body_length: int

    request_id_header: str
    real_ip_header: str

    otel_service_name: str
    otel_traces_exporter: str

    default_locale: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name, "1" if default else "0").lower()
    return raw in ("1", "true", "yes", "on")


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///erp.db"),
        log_level=_getenv("LOG_LEVEL", "INFO"),
        log_json=_getbool("LOG_JSON", False),
        log_request_body=_getbool("LOG_REQUEST_BODY", True),
        log_response_body=_getbool("LOG_RESPONSE_BODY", True),
        log_max_body_length=_getint("LOG_MAX_BODY_LENGTH", 512),
        request_id_header=_getenv("REQUEST_ID_HEADER", "X-Request-Id"),
        real_ip_header=_getenv("REAL_IP_HEADER", "X-Real-Ip"),
        otel_service_name=_getenv("OTEL_SERVICE_NAME", "erp"),
        otel_traces_exporter=_getenv("OTEL_TRACES_EXPORTER", "none").lower(),
        default_locale=_getenv("DEFAULT_LOCALE", "en"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "LOG_JSON": s.log_json,
        "LOG_REQUEST_BODY": s.log_request_body,
        "LOG_RESPONSE_BODY": s.log_response_body,
        "LOG_MAX_BODY_LENGTH": s.log_max_body_length,
        "REQUEST_ID_HEADER": s.request_id_header,
        "REAL_IP_HEADER": s.real_ip_header,
        "OTEL_SERVICE_NAME": s.otel_service_name,
        "OTEL_TRACES_EXPORTER": s.otel_traces_exporter,
        "DEFAULT_LOCALE": s.default_locale,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
