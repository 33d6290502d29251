"""Executable entrypoint for the WhatsApp gateway service."""

from __future__ import annotations

import logging
import os

import uvicorn

from .config import gateway_config


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")


def main() -> None:
    _init_logging()
    cfg = gateway_config()
    uvicorn.run(
        "wagateway.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
