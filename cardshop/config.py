import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .errors import ConfigError

# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_PAYMENT_BASE_URL = "https://2282045.pay.lanjingzf.com"
DEFAULT_PAYMENT_SECRET_KEY = "dev-payment-secret-change-me"
DEFAULT_NOTIFY_URL = "http://localhost:9000/api/payment/notify"
DEFAULT_RETURN_URL = "http://localhost:9000/api/payment/return"
DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_SESSION_SECRET = "dev-secret-change-me"

STORE_BACKENDS = ("file", "pg")


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str = DEFAULT_PAYMENT_BASE_URL
    secret_key: str = DEFAULT_PAYMENT_SECRET_KEY
    notify_url: str = DEFAULT_NOTIFY_URL
    return_url: str = DEFAULT_RETURN_URL
    timeout: float = 10.0


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    # accept the "mock_signature" sentinel on payment callbacks
    allow_mock_signature: bool = True
    store_backend: str = "file"
    data_dir: str = "data"
    database_url: Optional[str] = None
    session_secret: str = DEFAULT_SESSION_SECRET
    admin_password: str = "supasecret"
    frontend_url: str = DEFAULT_FRONTEND_URL
    order_ttl_seconds: int = 15 * 60
    stats_tz: str = "Asia/Shanghai"
    log_level: str = "INFO"
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 30
    payment_gateway: str = "live"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        app_env = env.get("APP_ENV", "development").strip().lower()
        production = app_env == "production"

        gateway = GatewayConfig(
            base_url=env.get(
                "PAYMENT_BASE_URL", DEFAULT_PAYMENT_BASE_URL
            ).rstrip("/"),
            secret_key=env.get(
                "PAYMENT_SECRET_KEY", DEFAULT_PAYMENT_SECRET_KEY
            ),
            notify_url=env.get("PAYMENT_NOTIFY_URL", DEFAULT_NOTIFY_URL),
            return_url=env.get("PAYMENT_RETURN_URL", DEFAULT_RETURN_URL),
            timeout=float(env.get("PAYMENT_TIMEOUT", "10")),
        )

        # the sentinel bypass never survives into production
        allow_mock = (not production) and _flag(
            env.get("PAYMENT_ALLOW_MOCK_SIGNATURE"), True
        )

        # "mock" routes customers to the local mock cashier page
        gateway_kind = env.get("PAYMENT_GATEWAY", "live").strip().lower()
        if gateway_kind not in ("live", "mock"):
            raise ConfigError("PAYMENT_GATEWAY", "expected 'live' or 'mock'")
        if gateway_kind == "mock" and not allow_mock:
            raise ConfigError(
                "PAYMENT_GATEWAY",
                "the mock gateway needs mock signatures to be allowed",
            )

        database_url = env.get("DATABASE_URL") or None
        backend = (env.get("STORE_BACKEND") or "").strip().lower()
        if not backend:
            backend = "pg" if database_url else "file"
        if backend not in STORE_BACKENDS:
            raise ConfigError(
                "STORE_BACKEND", f"expected one of {STORE_BACKENDS}"
            )
        if backend == "pg" and not database_url:
            raise ConfigError("DATABASE_URL", "required when STORE_BACKEND=pg")

        settings = cls(
            app_env=app_env,
            gateway=gateway,
            allow_mock_signature=allow_mock,
            store_backend=backend,
            data_dir=env.get("DATA_DIR", "data"),
            database_url=database_url,
            session_secret=env.get("SESSION_SECRET", DEFAULT_SESSION_SECRET),
            admin_password=env.get("ADMIN_PASSWORD", "supasecret"),
            frontend_url=env.get(
                "FRONTEND_URL", DEFAULT_FRONTEND_URL
            ).rstrip("/"),
            order_ttl_seconds=int(env.get("ORDER_TTL_SECONDS", str(15 * 60))),
            stats_tz=env.get("STATS_TZ", "Asia/Shanghai"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            db_pool_size=int(env.get("DB_POOL_SIZE", "5")),
            db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "5")),
            db_pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
            payment_gateway=gateway_kind,
        )
        return settings.check()

    def check(self) -> "Settings":
        """Refuse development secrets in production."""
        if not self.is_production:
            return self
        if self.gateway.secret_key == DEFAULT_PAYMENT_SECRET_KEY:
            raise ConfigError(
                "PAYMENT_SECRET_KEY", "must be set when APP_ENV=production"
            )
        if self.session_secret == DEFAULT_SESSION_SECRET:
            raise ConfigError(
                "SESSION_SECRET", "must be set when APP_ENV=production"
            )
        return self


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
