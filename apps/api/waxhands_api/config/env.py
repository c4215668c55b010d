"""Environment variable resolution utilities.

Canonical env names + fail-fast validation for production. Settings are
resolved once by the application factory and passed to collaborators
explicitly; nothing below caches a provider instance at module level.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

SUPPORTED_SIGNATURE_ALGORITHMS = frozenset(
    {"md5", "sha1", "sha256", "sha384", "sha512", "ripemd160"}
)

DEFAULT_MERCHANT_LOGIN = "waxhands.ru"
DEFAULT_SUCCESS_PAGE_URL = "https://waxhands.ru/payment/success"
DEFAULT_FAIL_PAGE_URL = "https://waxhands.ru/payment/fail"
DEFAULT_REALTIME_CHANNEL = "waxhands:realtime"
DEFAULT_OPSTATE_TIMEOUT_SECONDS = 3.0


def get_waxhands_env() -> str:
    """Get environment name.

    Priority:
    1. WAXHANDS_ENV (canonical)
    2. NODE_ENV (legacy deployment compat)
    3. Default: "local"

    Returns:
        Environment name (lowercase)
    """
    return (
        os.getenv("WAXHANDS_ENV")
        or os.getenv("NODE_ENV")
        or "local"
    ).lower()


def is_production_env() -> bool:
    """Determine if running in production environment."""
    return get_waxhands_env() in {"prod", "production"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def get_signature_algorithm() -> str:
    """Get the Robokassa signature hash algorithm.

    Robokassa lets the merchant choose the digest in the shop settings;
    the value here must match that choice.

    Returns:
        Lower-case hashlib algorithm name (default "md5")

    Raises:
        ValueError: If ROBOKASSA_ALGORITHM names an unsupported algorithm
    """
    algorithm = (os.getenv("ROBOKASSA_ALGORITHM") or "MD5").strip().lower()
    if algorithm not in SUPPORTED_SIGNATURE_ALGORITHMS:
        raise ValueError(
            f"ROBOKASSA_ALGORITHM={algorithm!r} is not supported. "
            f"Use one of: {', '.join(sorted(SUPPORTED_SIGNATURE_ALGORITHMS))}"
        )
    return algorithm


def get_cors_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if origins:
        return origins
    return ["http://localhost:3000", "http://localhost:5173"]


@dataclass(frozen=True)
class RobokassaSettings:
    """Merchant credentials and endpoints for the Robokassa gateway."""

    merchant_login: str = DEFAULT_MERCHANT_LOGIN
    password1: str = ""
    password2: str = ""
    test_mode: bool = False
    algorithm: str = "md5"
    opstate_timeout: float = DEFAULT_OPSTATE_TIMEOUT_SECONDS
    payment_url: str = "https://auth.robokassa.ru/Merchant/Index.aspx"
    opstate_url: str = (
        "https://auth.robokassa.ru/Merchant/WebService/Service.asmx/OpStateExt"
    )


@dataclass(frozen=True)
class AppSettings:
    """Top-level application settings injected into create_app()."""

    robokassa: RobokassaSettings = field(default_factory=RobokassaSettings)
    success_page_url: str = DEFAULT_SUCCESS_PAGE_URL
    fail_page_url: str = DEFAULT_FAIL_PAGE_URL
    redis_url: str = "redis://localhost:6379/0"
    realtime_channel: str = DEFAULT_REALTIME_CHANNEL
    internal_api_token: Optional[str] = None
    cors_allowed_origins: list[str] = field(default_factory=get_cors_allowed_origins)


def load_robokassa_settings() -> RobokassaSettings:
    """Load Robokassa settings from the environment.

    Environment variables:
    - ROBOKASSA_MERCHANT_LOGIN (default: waxhands.ru)
    - ROBOKASSA_PASSWORD_1 / ROBOKASSA_PASSWORD_2 (required in production)
    - ROBOKASSA_TEST_MODE (default: false)
    - ROBOKASSA_ALGORITHM (default: MD5)
    - ROBOKASSA_OPSTATE_TIMEOUT (seconds, default: 3.0)

    Raises:
        ValueError: If passwords are missing in production or a value is invalid
    """
    password1 = os.getenv("ROBOKASSA_PASSWORD_1", "")
    password2 = os.getenv("ROBOKASSA_PASSWORD_2", "")

    if is_production_env() and (not password1 or not password2):
        raise ValueError(
            "ROBOKASSA_PASSWORD_1 and ROBOKASSA_PASSWORD_2 are required in production. "
            "Copy them from the Robokassa merchant cabinet (technical settings)."
        )

    return RobokassaSettings(
        merchant_login=os.getenv("ROBOKASSA_MERCHANT_LOGIN") or DEFAULT_MERCHANT_LOGIN,
        password1=password1,
        password2=password2,
        test_mode=_env_flag("ROBOKASSA_TEST_MODE"),
        algorithm=get_signature_algorithm(),
        opstate_timeout=_env_float(
            "ROBOKASSA_OPSTATE_TIMEOUT", DEFAULT_OPSTATE_TIMEOUT_SECONDS
        ),
    )


def load_settings() -> AppSettings:
    """Resolve all application settings from the environment."""
    return AppSettings(
        robokassa=load_robokassa_settings(),
        success_page_url=os.getenv("PAYMENT_SUCCESS_PAGE_URL") or DEFAULT_SUCCESS_PAGE_URL,
        fail_page_url=os.getenv("PAYMENT_FAIL_PAGE_URL") or DEFAULT_FAIL_PAGE_URL,
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        realtime_channel=os.getenv("REALTIME_CHANNEL") or DEFAULT_REALTIME_CHANNEL,
        internal_api_token=os.getenv("INTERNAL_API_TOKEN") or None,
        cors_allowed_origins=get_cors_allowed_origins(),
    )
