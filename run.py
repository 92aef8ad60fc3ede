#!/usr/bin/env python3
# run.py
"""
Development server runner.

Serves the chat API with auto-reload. Uses DATABASE_URL / REDIS_URL from the
environment (or .env); without REDIS_URL the broadcaster runs in memory.
"""
import os
from pathlib import Path
import sys

root_dir = Path(__file__).parent
sys.path.insert(0, str(root_dir))
os.chdir(root_dir)

os.environ.setdefault("ENVIRONMENT", "development")

import uvicorn

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    print(f"Starting topicchat on http://localhost:{port} (docs at /docs)")

    uvicorn.run(
        "topicchat.main:app",
        host="0.0.0.0",
        port=port,
        reload=True,
        log_level="info",
        timeout_graceful_shutdown=5,
    )
