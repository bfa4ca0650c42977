"""Per-component file loggers."""

import logging
import os


def build_logger(name: str, log_dir: str, owner: object | None = None, level: str = "INFO") -> logging.Logger:
    """Return a logger writing to ``log_dir/<name>.log``.

    Each owning object gets its own logger instance (keyed by ``id(owner)``)
    so concurrent sessions never share handlers.
    """
    os.makedirs(log_dir, exist_ok=True)
    suffix = f".{id(owner)}" if owner is not None else ""
    logger = logging.getLogger(f"tiered_agents.{name}{suffix}")
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    log_path = os.path.join(log_dir, f"{name}.log")
    handler = logging.FileHandler(log_path, encoding="utf-8")
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def release_logger(logger: logging.Logger) -> None:
    """Detach and close every handler on ``logger``."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
