#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with the loan servicing system.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_servicing.api import run_server
from loan_servicing.config import get_config
from loan_servicing.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )

    print("Starting Loan Servicing System...")
    print(f"Storage: {config.database_url}")
    print(f"SMS: {config.sms_provider if config.sms_enabled else 'disabled'}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing System...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
