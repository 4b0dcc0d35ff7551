"""Startup-time helpers: data directory bootstrap and redacted config logging."""

from invoicemailer.common.config import CommonSettings
from invoicemailer.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token")


def _redact(name: str, value) -> str:
    """Return a loggable value, hiding anything secret-like that is set."""

    if value in ("", None):
        return "<unset>"
    if any(marker in name.lower() for marker in _SECRET_MARKERS) and not name.endswith("_file_name"):
        return "<redacted>"
    return str(value)


def prepare_data_dir(cfg: CommonSettings) -> None:
    """Create the directory holding queue, state and token snapshots."""

    cfg.data_dir.mkdir(parents=True, exist_ok=True)


def log_startup_config(cfg: CommonSettings, keys: list[str]) -> None:
    """Log selected settings plus which persisted snapshots already exist."""

    config = {"service": cfg.service_name}
    for key in keys:
        config[key] = _redact(key, getattr(cfg, key, None))
    config["queue_file_present"] = cfg.queue_path.exists()
    config["state_file_present"] = cfg.state_path.exists()
    config["token_file_present"] = cfg.token_path.exists()
    logger.info("startup_config=%s", config)
    if not config["token_file_present"]:
        logger.warning("no Xero token file at %s; authorize via /xero/connect", cfg.token_path)
