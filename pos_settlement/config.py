import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings:
    @staticmethod
    def _get_int(name: str, default: int) -> int:
        return int(os.getenv(name, str(default)))

    @staticmethod
    def _get_float(name: str, default: float) -> float:
        return float(os.getenv(name, str(default)))

    @staticmethod
    def _get_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    @property
    def ENVIRONMENT(self) -> str:
        return os.getenv("ENVIRONMENT", "development")

    @property
    def DATABASE_URL(self) -> str:
        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("DATABASE_URL is required")
        return database_url

    @property
    def DB_CONNECT_RETRIES(self) -> int:
        return self._get_int("DB_CONNECT_RETRIES", 5)

    @property
    def DB_CONNECT_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_RETRY_DELAY_SECONDS", 2)

    # Card gateway (Authorize.Net JSON API)

    @property
    def AUTHORIZE_NET_API_LOGIN_ID(self) -> str:
        return os.getenv("AUTHORIZE_NET_API_LOGIN_ID", "")

    @property
    def AUTHORIZE_NET_TRANSACTION_KEY(self) -> str:
        return os.getenv("AUTHORIZE_NET_TRANSACTION_KEY", "")

    @property
    def AUTHORIZE_NET_ENDPOINT(self) -> str:
        override = os.getenv("AUTHORIZE_NET_ENDPOINT", "").strip()
        if override:
            return override
        if self.ENVIRONMENT == "production":
            return "https://api.authorize.net/xml/v1/request.api"
        return "https://apitest.authorize.net/xml/v1/request.api"

    @property
    def GATEWAY_API_TIMEOUT(self) -> float:
        return self._get_float("GATEWAY_API_TIMEOUT", 30.0)

    # Cloud terminal API (Valor Connect)

    @property
    def VALOR_API_BASE_URL(self) -> str:
        return os.getenv("VALOR_API_BASE_URL", "https://api.valorpaytech.com")

    @property
    def VALOR_API_MERCHANT_ID(self) -> str:
        return os.getenv("VALOR_API_MERCHANT_ID", "")

    @property
    def VALOR_API_API_KEY(self) -> str:
        return os.getenv("VALOR_API_API_KEY", "")

    @property
    def VALOR_API_SECRET_KEY(self) -> str:
        return os.getenv("VALOR_API_SECRET_KEY", "")

    @property
    def CLOUD_API_TIMEOUT(self) -> float:
        return self._get_float("CLOUD_API_TIMEOUT", 30.0)

    # LAN socket terminals

    @property
    def TERMINAL_HOST(self) -> str:
        return os.getenv("TERMINAL_HOST", "")

    @property
    def TERMINAL_PORT(self) -> int:
        return self._get_int("TERMINAL_PORT", 10009)

    @property
    def TERMINAL_CONNECT_TIMEOUT(self) -> float:
        return self._get_float("TERMINAL_CONNECT_TIMEOUT", 10.0)

    @property
    def TERMINAL_SALE_TIMEOUT(self) -> float:
        return self._get_float("TERMINAL_SALE_TIMEOUT", 120.0)

    @property
    def TERMINAL_STATUS_TIMEOUT(self) -> float:
        return self._get_float("TERMINAL_STATUS_TIMEOUT", 30.0)

    @property
    def GATEWAY_TERMINAL_NUMBER(self) -> str:
        return os.getenv("GATEWAY_TERMINAL_NUMBER", "")

    @property
    def VALOR_TERMINAL_SERIAL(self) -> str:
        return os.getenv("VALOR_TERMINAL_SERIAL", "")

    # Poller

    @property
    def POLL_MAX_ATTEMPTS(self) -> int:
        return self._get_int("POLL_MAX_ATTEMPTS", 60)

    @property
    def POLL_INTERVAL_MS(self) -> int:
        return self._get_int("POLL_INTERVAL_MS", 2000)

    # Reconciliation

    @property
    def RECONCILE_ENABLED(self) -> bool:
        return self._get_bool("RECONCILE_ENABLED", True)

    @property
    def RECONCILE_INTERVAL_SECONDS(self) -> int:
        return self._get_int("RECONCILE_INTERVAL_SECONDS", 60)

    @property
    def RECONCILE_LOOKBACK_MINUTES(self) -> int:
        return self._get_int("RECONCILE_LOOKBACK_MINUTES", 15)

    @property
    def RECONCILE_MATCH_WINDOW_MINUTES(self) -> int:
        return self._get_int("RECONCILE_MATCH_WINDOW_MINUTES", 15)

    @property
    def RECONCILE_AMOUNT_TOLERANCE(self) -> Decimal:
        return Decimal(os.getenv("RECONCILE_AMOUNT_TOLERANCE", "0.01"))


settings = Settings()

if settings.ENVIRONMENT == "production" and not settings.AUTHORIZE_NET_API_LOGIN_ID:
    import warnings
    warnings.warn("AUTHORIZE_NET_API_LOGIN_ID is not set. Gateway calls will fail.", UserWarning)
