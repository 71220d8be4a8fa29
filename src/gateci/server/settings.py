from __future__ import annotations
import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./gateci.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
QUEUE_NAME = os.environ.get("QUEUE_NAME", "gateci:queue")
CLAIM_TIMEOUT_SECONDS = int(os.environ.get("CLAIM_TIMEOUT_SECONDS", "5"))

# os.pathsep separated list of workflow files, loaded once at startup
WORKFLOWS = [p for p in os.environ.get("GATECI_WORKFLOWS", "gateci.yml").split(os.pathsep) if p]
