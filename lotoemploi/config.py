from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, List


class ConfigError(RuntimeError):
    def __init__(self, missing: List[str],
                 invalid: Iterable[str] = ()):
        self.missing = list(missing)
        self.invalid = list(invalid)
        parts = []
        if self.missing:
            parts.append(
                "missing required configuration: " + ", ".join(self.missing)
            )
        if self.invalid:
            parts.append("invalid configuration: " + ", ".join(self.invalid))
        super().__init__("; ".join(parts))


PAYDUNYA_KEYS = ("PAYDUNYA_MASTER_KEY", "PAYDUNYA_PRIVATE_KEY",
                 "PAYDUNYA_TOKEN")
GATEWAYS = ("paydunya", "mock")


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class Settings:
    database_url: str
    base_url: str
    allowed_origins: List[str]

    payment_gateway: str = "paydunya"  # 'paydunya' | 'mock'
    paydunya_master_key: str = ""
    paydunya_private_key: str = ""
    paydunya_token: str = ""
    paydunya_mode: str = "test"  # 'test' | 'live'
    store_name: str = "Lotoemploi"

    frontend_url: str = ""
    status_page_path: str = "/payment-status"
    ticket_price: Optional[int] = None
    max_tickets_per_payment: int = 100
    admin_token: str = ""

    whatsapp_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_template: str = "ticket_confirmation"
    whatsapp_lang: str = "fr"
    whatsapp_api_version: str = "v20.0"
    default_country_code: str = "221"

    # connection pool (postgres) and datastore gate
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: float = 30.0
    db_gate_limit: Optional[int] = None  # defaults to the pool size

    redis_url: str = "redis://127.0.0.1:6379"
    http_timeout: float = 10.0
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        self.frontend_url = (self.frontend_url or self.base_url).rstrip("/")

    @property
    def callback_url(self) -> str:
        return f"{self.base_url}/api/confirm-payment"

    def return_url(self, payment_token: str) -> str:
        return f"{self.base_url}/api/payment-return/{payment_token}"

    def status_page_url(self) -> str:
        return f"{self.frontend_url}{self.status_page_path}"

    @property
    def messaging_configured(self) -> bool:
        return bool(self.whatsapp_token and self.whatsapp_phone_number_id)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Read the process environment once. Every required name that is
        missing and every value that does not parse is reported together
        in a single ConfigError.
        """
        env = os.environ if environ is None else environ
        invalid: List[str] = []

        def get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        def number(name: str, default, cast: Callable = int,
                   allow_zero: bool = False):
            raw = get(name)
            if not raw:
                return default
            try:
                value = cast(raw)
            except ValueError:
                invalid.append(f"{name}={raw!r} is not a number")
                return default
            if value < 0 or (value == 0 and not allow_zero):
                invalid.append(f"{name}={raw!r} must be positive")
                return default
            return value

        gateway = get("PAYMENT_GATEWAY", "paydunya").lower()
        required = ["DATABASE_URL", "BASE_URL", "ALLOWED_ORIGINS"]
        if gateway == "paydunya":
            required.extend(PAYDUNYA_KEYS)
        missing = [name for name in required if not get(name)]
        if gateway not in GATEWAYS:
            invalid.append(
                f"PAYMENT_GATEWAY={gateway!r} (expected paydunya|mock)"
            )

        ticket_price = number("TICKET_PRICE", None)
        max_tickets = number("MAX_TICKETS_PER_PAYMENT", 100)
        pool_size = number("DB_POOL_SIZE", 10)
        max_overflow = number("DB_MAX_OVERFLOW", 10, allow_zero=True)
        pool_timeout = number("DB_POOL_TIMEOUT", 30.0, cast=float)
        gate_limit = number("DB_GATE_LIMIT", None)
        http_timeout = number("HTTP_TIMEOUT", 10.0, cast=float)

        if missing or invalid:
            raise ConfigError(missing, invalid)

        return cls(
            database_url=get("DATABASE_URL"),
            base_url=get("BASE_URL"),
            allowed_origins=_split_csv(get("ALLOWED_ORIGINS")),
            payment_gateway=gateway,
            paydunya_master_key=get("PAYDUNYA_MASTER_KEY"),
            paydunya_private_key=get("PAYDUNYA_PRIVATE_KEY"),
            paydunya_token=get("PAYDUNYA_TOKEN"),
            paydunya_mode=get("PAYDUNYA_MODE", "test").lower(),
            store_name=get("STORE_NAME", "Lotoemploi"),
            frontend_url=get("FRONTEND_URL"),
            status_page_path=get("STATUS_PAGE_PATH", "/payment-status"),
            ticket_price=ticket_price,
            max_tickets_per_payment=max_tickets,
            admin_token=get("ADMIN_TOKEN"),
            whatsapp_token=get("WHATSAPP_TOKEN"),
            whatsapp_phone_number_id=get("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_template=get("WHATSAPP_TEMPLATE", "ticket_confirmation"),
            whatsapp_lang=get("WHATSAPP_LANG", "fr"),
            whatsapp_api_version=get("WHATSAPP_API_VERSION", "v20.0"),
            default_country_code=get("DEFAULT_COUNTRY_CODE", "221"),
            db_pool_size=pool_size,
            db_max_overflow=max_overflow,
            db_pool_timeout=pool_timeout,
            db_gate_limit=gate_limit,
            redis_url=get("REDIS_URL", "redis://127.0.0.1:6379"),
            http_timeout=http_timeout,
            log_level=get("LOG_LEVEL", "INFO").upper(),
            log_file=get("LOG_FILE") or None,
        )
