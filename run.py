#!/usr/bin/env python3
"""
Lending Ledger Entry Point

Starts the FastAPI server with the lending ledger system.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lending_ledger.api import run_server
from lending_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Ledger...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Lending Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
