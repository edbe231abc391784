#!/usr/bin/env python3
"""
Family Bank Ledger Entry Point

Starts the FastAPI server with configuration taken from FAMILY_BANK_* environment
variables (or a .env file).
"""

import sys

import uvicorn

from family_bank.api import create_app
from family_bank.config import get_config
from family_bank.errors import ConfigurationError, StorageError
from family_bank.logging_config import get_logger


def main() -> int:
    config = get_config()
    logger = get_logger("family_bank.run")

    try:
        app = create_app(config)
    except (ConfigurationError, StorageError) as e:
        logger.critical(f"Cannot start ledger service: {e}")
        return 1

    logger.info(f"Ledger API listening on {config.api_host}:{config.api_port}")
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
