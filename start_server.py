#!/usr/bin/env python3
"""
LLM Router FastAPI Server Startup Script

This script starts the FastAPI server with proper configuration
and provides helpful startup information.
"""

import logging
import os
import sys
from pathlib import Path

from core.config import load_config
from core.errors import ConfigurationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def check_dependencies():
    """Check if required dependencies are installed"""
    required_packages = ['fastapi', 'uvicorn', 'pydantic', 'numpy']
    missing_packages = []

    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing_packages.append(package)

    if missing_packages:
        print(f"Error: Missing required packages: {', '.join(missing_packages)}")
        print("Install them with: pip install -e .")
        return False

    return True


def check_config_file(config_file: Path) -> bool:
    """Check that the configuration file, when present, parses"""
    if not config_file.exists():
        print(f"Warning: Configuration file not found: {config_file}")
        print("Defaults will be used. Create config.ini based on config.sample.ini to customize.")
        return True

    try:
        app_config = load_config(str(config_file))
    except ConfigurationError as e:
        print(f"Error: Invalid configuration in {config_file}: {e}")
        return False

    print(f"Configuration file found: {config_file}")
    print(f"  • Providers: {', '.join(app_config.providers)}")
    print(f"  • Cache: {'enabled' if app_config.cache.enabled else 'disabled'}")
    print(f"  • ML routing: {'enabled' if app_config.router.ml_routing_enabled else 'disabled'}")
    return True


def main():
    """Main startup routine"""
    print("Starting LLM Router FastAPI Server")
    print("=" * 40)

    # Check current directory
    current_dir = Path.cwd()
    print(f"Working directory: {current_dir}")

    # Check dependencies
    print("\n📦 Checking Dependencies...")
    if not check_dependencies():
        sys.exit(1)
    print("All dependencies are available")

    # Check configuration
    print("\n⚙️  Checking Configuration...")
    config_file = Path(os.getenv("ROUTER_CONFIG", "config.ini"))
    if not check_config_file(config_file):
        sys.exit(1)

    # Server configuration
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "true").lower() == "true"
    log_level = os.getenv("LOG_LEVEL", "info")

    print(f"\n🌐 Server Configuration:")
    print(f"  • Host: {host}")
    print(f"  • Port: {port}")
    print(f"  • Reload: {reload}")
    print(f"  • Log Level: {log_level}")

    print(f"\n📡 API Endpoints will be available at:")
    print(f"  • Health:     http://{host}:{port}/health")
    print(f"  • Chat:       http://{host}:{port}/v1/chat/completions")
    print(f"  • Costs:      http://{host}:{port}/v1/costs/analyze")
    print(f"  • Providers:  http://{host}:{port}/providers/status")
    print(f"  • Stats:      http://{host}:{port}/stats")
    print(f"  • Docs:       http://{host}:{port}/docs")

    print(f"\nStarting server...")
    print("=" * 40)

    # Start the server
    try:
        import uvicorn
        uvicorn.run(
            "fastapi_app:app",
            host=host,
            port=port,
            reload=reload,
            log_level=log_level
        )
    except KeyboardInterrupt:
        print("\n\n🛑 Server stopped by user")
    except Exception as e:
        print(f"\n\nError: Server failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
