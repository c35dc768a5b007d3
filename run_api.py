#!/usr/bin/env python3
"""
Startup script for the ReviewEngine API server
Interactive documentation is served at /docs
"""

import sys
from pathlib import Path

import uvicorn

# Add src to path for imports
src_path = Path(__file__).parent / "src"
sys.path.insert(0, str(src_path))

from reviewengine.core.config import get_settings  # noqa: E402


def main() -> None:
    """Run the FastAPI server"""
    settings = get_settings()
    print("Starting ReviewEngine API server...")
    print(f"API documentation will be available at: http://localhost:{settings.api_port}/docs")
    print(f"OpenAPI JSON schema available at: http://localhost:{settings.api_port}/openapi.json")

    uvicorn.run(
        "reviewengine.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
