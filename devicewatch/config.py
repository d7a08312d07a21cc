import os
from pathlib import Path
from dotenv import load_dotenv
load_dotenv()  # reads .env in the project root


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).expanduser().resolve()
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
    WEB_PORT = int(os.getenv("WEB_PORT", "5000"))
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    DATABASE_URL = os.getenv(
        "DATABASE_URL", f"sqlite:///{DATA_DIR / 'devicewatch.sqlite3'}"
    )

    # ------------------------------------------------------------------
    # Bearer credentials ------------------------------------------------
    DEV_TOKEN_SECRET = "dev-token-secret"
    TOKEN_SECRET = os.getenv("TOKEN_SECRET", DEV_TOKEN_SECRET)
    TOKEN_TTL_SECONDS = int(os.getenv("TOKEN_TTL_SECONDS", "3600"))
    TOKEN_ISSUER = os.getenv("TOKEN_ISSUER", "devicewatch-backend")
    TOKEN_AUDIENCE = os.getenv("TOKEN_AUDIENCE", "devicewatch-frontend")
    MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))

    INITIAL_ADMIN_CONSUMER_NO = os.getenv("INITIAL_ADMIN_CONSUMER_NO", "")
    INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")

    LOGIN_ATTEMPT_LIMIT = int(os.getenv("LOGIN_ATTEMPT_LIMIT", "5"))
    LOGIN_ATTEMPT_WINDOW = int(os.getenv("LOGIN_ATTEMPT_WINDOW", "900"))
    LOGIN_BACKOFF_SECONDS = int(os.getenv("LOGIN_BACKOFF_SECONDS", "900"))
    RESET_ATTEMPT_LIMIT = int(os.getenv("RESET_ATTEMPT_LIMIT", "5"))
    RESET_ATTEMPT_WINDOW = int(os.getenv("RESET_ATTEMPT_WINDOW", "900"))
    RESET_BACKOFF_SECONDS = int(os.getenv("RESET_BACKOFF_SECONDS", "900"))

    USERS_REQUIRE_ADMIN = _flag("USERS_REQUIRE_ADMIN")
    RESOLVE_DEVICES_PER_REQUEST = _flag("RESOLVE_DEVICES_PER_REQUEST")

    # ------------------------------------------------------------------
    # MQTT telemetry ----------------------------------------------------
    BROKER_HOST = os.getenv("BROKER_HOST", "127.0.0.1")
    BROKER_PORT = int(os.getenv("BROKER_PORT", "1883"))
    BROKER_CONNECT_HOST = os.getenv("BROKER_CONNECT_HOST", "")
    BROKER_USERNAME = os.getenv("BROKER_USERNAME", "")
    BROKER_PASSWORD = os.getenv("BROKER_PASSWORD", "")
    BROKER_TLS_ENABLED = _flag("BROKER_TLS_ENABLED")
    BROKER_TLS_CA_FILE = os.getenv("BROKER_TLS_CA_FILE", "")
    BROKER_TLS_CERTFILE = os.getenv("BROKER_TLS_CERTFILE", "")
    BROKER_TLS_KEYFILE = os.getenv("BROKER_TLS_KEYFILE", "")
    BROKER_TLS_INSECURE = _flag("BROKER_TLS_INSECURE")
    BROKER_TLS_VERSION = os.getenv("BROKER_TLS_VERSION", "")
    MQTT_CLIENT_ID = os.getenv("MQTT_CLIENT_ID", "devicewatch-ingest")
    TELEMETRY_TOPIC = os.getenv("TELEMETRY_TOPIC", "device/data")
    INGEST_ENABLED = _flag("INGEST_ENABLED", "1")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.FRONTEND_URL.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "development"

    def resolve_data_path(self, path: str | os.PathLike[str]) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.DATA_DIR / candidate
        return candidate.expanduser().resolve()

settings = Settings()
