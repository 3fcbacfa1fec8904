"""Compliflow API server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    from compliflow.core.config import get_settings

    settings = get_settings()
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    print(f"Starting Compliflow on {host}:{port} (event store: {settings.event_store.backend})")
    uvicorn.run(
        "compliflow.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.observability.log_level.lower(),
    )
