#!/usr/bin/env python3
"""
Savings Group Core Entry Point

Starts the FastAPI server on the configured host and port (8090 by default).
"""

import sys

from core_savings.api import run_server
from core_savings.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Savings Group Core...")
    print(f"Storage: {settings.storage_backend}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Savings Group Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
