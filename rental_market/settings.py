import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    rental_payment_timeout_hours: int = 24
    wallet_currency: str = "AOA"
    proxypay_api_url: str = "https://api.sandbox.proxypay.co.ao"
    proxypay_api_key: str = ""
    proxypay_environment: str = "sandbox"
    proxypay_merchant_id: str = ""
    proxypay_entity_id: str = ""
    proxypay_webhook_secret: str = ""
    proxypay_reference_expiry_days: int = 7
    proxypay_timeout_seconds: int = 20
    frontend_url: str = ""
    api_url: str = ""

    @property
    def is_sandbox(self) -> bool:
        return self.proxypay_environment != "production"


def load_settings() -> Settings:
    environment = _env_str("PROXYPAY_ENVIRONMENT", "sandbox").lower()
    if environment not in {"sandbox", "production"}:
        raise RuntimeError("PROXYPAY_ENVIRONMENT must be sandbox or production.")
    return Settings(
        rental_payment_timeout_hours=_env_int("RENTAL_PAYMENT_TIMEOUT_HOURS", 24),
        wallet_currency=_env_str("WALLET_CURRENCY", "AOA"),
        proxypay_api_url=_env_str("PROXYPAY_API_URL", "https://api.sandbox.proxypay.co.ao").rstrip("/"),
        proxypay_api_key=_env_str("PROXYPAY_API_KEY"),
        proxypay_environment=environment,
        proxypay_merchant_id=_env_str("PROXYPAY_MERCHANT_ID"),
        proxypay_entity_id=_env_str("PROXYPAY_ENTITY_ID"),
        proxypay_webhook_secret=_env_str("PROXYPAY_WEBHOOK_SECRET"),
        proxypay_reference_expiry_days=_env_int("PROXYPAY_REFERENCE_EXPIRY_DAYS", 7),
        proxypay_timeout_seconds=_env_int("PROXYPAY_TIMEOUT_SECONDS", 20),
        frontend_url=_env_str("FRONTEND_URL").rstrip("/"),
        api_url=_env_str("API_URL").rstrip("/"),
    )
