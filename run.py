#!/usr/bin/env python3
"""
Accrual Vault Entry Point

Starts the FastAPI server for the accrual vault.
"""

import sys

from accrual_vault.api import run_server
from accrual_vault.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Accrual Vault...")
    print(f"Storage backend: {settings.storage_backend}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(host=settings.api_host, port=settings.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Accrual Vault...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
