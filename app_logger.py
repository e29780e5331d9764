import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = os.getenv("STOREFRONT_LOG_LEVEL", "INFO").upper()


def setup_logging(level: str | None = None) -> logging.Logger:
    level_value = getattr(logging, (level or _DEFAULT_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=level_value, format=LOG_FORMAT)

    logger = logging.getLogger("storefront")
    logger.setLevel(level_value)

    # Avoid duplicate console handlers when the app is built more than once
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger("storefront")
    return base.getChild(name) if name else base


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return "***@***"
    local, domain = email.split("@", 1)
    masked = f"{local[0]}***{local[-1]}" if len(local) > 2 else "***"
    return f"{masked}@{domain}"


def mask_phone(phone: str | None) -> str:
    if not phone or len(phone) <= 4:
        return "***"
    return f"{phone[:2]}***{phone[-2:]}"
