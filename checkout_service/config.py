import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

REQUIRED = ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "CLIENT_URL", "DATABASE_URL")


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: str
    stripe_webhook_secret: str
    client_url: str
    database_url: str
    stripe_timeout: float = 10.0
    stripe_max_retries: int = 2
    webhook_tolerance: int = 300
    currency: str = "usd"
    log_level: str = "INFO"


def load_settings(environ=None) -> Settings:
    """Read settings from the environment, failing fast on missing secrets."""
    if environ is None:
        load_dotenv(dotenv_path=ENV_PATH)
        environ = os.environ

    missing = [name for name in REQUIRED if not environ.get(name)]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} not set. Check your .env file.")

    return Settings(
        stripe_secret_key=environ["STRIPE_SECRET_KEY"],
        stripe_webhook_secret=environ["STRIPE_WEBHOOK_SECRET"],
        client_url=environ["CLIENT_URL"].rstrip("/"),
        database_url=environ["DATABASE_URL"],
        stripe_timeout=float(environ.get("STRIPE_TIMEOUT_SECONDS", 10)),
        stripe_max_retries=int(environ.get("STRIPE_MAX_NETWORK_RETRIES", 2)),
        webhook_tolerance=int(environ.get("STRIPE_WEBHOOK_TOLERANCE", 300)),
        currency=environ.get("CHECKOUT_CURRENCY", "usd").lower(),
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.set_name("checkout_service")
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))

    # avoid duplicate handlers on reload
    for existing in list(root_logger.handlers):
        if existing.get_name() == "checkout_service":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
