"""Environment-driven settings for connector control."""

from __future__ import annotations

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _parse_delays(raw: str) -> List[float]:
    """Parse a comma separated list of delays in seconds ("1,2,3")."""
    delays = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            delays.append(float(part))
    return delays


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./connector_control.db")

# Base URL only, without /connectors
KAFKA_CONNECT_URL = os.getenv("KAFKA_CONNECT_URL", "http://localhost:8083")

# Empty means the local SQL-backed version store is the registry
REGISTRY_URL = os.getenv("REGISTRY_URL", "")

# Dashboard backend serving /api/list-tables
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:5002")

REQUEST_TIMEOUT_SECONDS = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

STATUS_POLL_INTERVAL_SECONDS = float(os.getenv("STATUS_POLL_INTERVAL_SECONDS", "60"))
TABLE_REFRESH_INTERVAL_SECONDS = float(os.getenv("TABLE_REFRESH_INTERVAL_SECONDS", "5"))

# Delayed refetches issued after a mutating command (the immediate one is implicit)
BURST_REFRESH_DELAYS = _parse_delays(os.getenv("BURST_REFRESH_DELAYS", "1,2,3"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
