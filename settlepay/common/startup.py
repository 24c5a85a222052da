"""Startup-time helpers for safe config logging."""

from settlepay.common.config import CommonSettings, settings as default_settings
from settlepay.common.logging import logger

SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


def redacted_config(settings: CommonSettings, keys: list[str]) -> dict[str, object]:
    """Selected settings by env-var name, secret-like values replaced."""

    values = settings.model_dump()
    config: dict[str, object] = {}
    for key in keys:
        value = values.get(key.lower(), "<unset>")
        if value not in ("", None, "<unset>") and any(marker in key for marker in SECRET_MARKERS):
            value = "<redacted>"
        config[key] = str(value) if value is not None else "<unset>"
    return config


def log_startup_config(service_name: str, keys: list[str], settings: CommonSettings | None = None) -> None:
    """Log selected config keys, and warn when payouts cannot reach the gateway."""

    settings = settings or default_settings
    logger.info("startup_config=%s", {"service": service_name, **redacted_config(settings, keys)})
    missing = [
        name
        for name in ("GATEWAY_KEY_ID", "GATEWAY_KEY_SECRET", "GATEWAY_ACCOUNT_NUMBER", "GATEWAY_WEBHOOK_SECRET")
        if not getattr(settings, name.lower())
    ]
    if missing and "GATEWAY_BASE_URL" in keys:
        logger.warning("gateway_not_configured missing=%s", ",".join(missing))
