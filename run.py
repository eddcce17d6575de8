#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with the overdue penalty sweep running.
"""

import sys

import uvicorn

from loan_ledger.api import create_app
from loan_ledger.config import get_config
from loan_ledger.logging_config import setup_logging


def main() -> None:
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)
    logger.info(
        f"Starting loan ledger for account {config.account_id} "
        f"({config.storage_backend} storage) on {config.api_host}:{config.api_port}"
    )

    try:
        uvicorn.run(
            create_app(),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        logger.info("Shutting down loan ledger")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
