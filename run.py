#!/usr/bin/env python3
"""
Core Wallet Entry Point

Starts the FastAPI server (port 8090 by default, see WALLET_API_PORT).
"""

import sys

from core_wallet.api import run_server


if __name__ == "__main__":
    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Core Wallet...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
