#!/usr/bin/env python3
"""
Loan Ledger Entry Point

Starts the FastAPI server with settings from LEDGER_* environment variables.
"""

import sys

import uvicorn

from loan_ledger.config import get_config
from loan_ledger.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_ledger.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(
        level=config.log_level,
        format_type=config.log_format,
        log_file=config.log_file
    )
    logger.info(
        f"Starting loan ledger on {config.api_host}:{config.api_port} "
        f"(storage={config.storage_backend}, currency={config.currency})"
    )

    try:
        run_server(host=config.api_host, port=config.api_port, debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        logger.info("Shutting down loan ledger")
