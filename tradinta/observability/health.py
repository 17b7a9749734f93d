from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from tradinta.config import Config
from tradinta.database import engine

_REQUIRED_TABLES = ("ForgingEvent", "ForgingEventTier", "Pledge", "Order", "Product", "User")


def check_database_health() -> Dict[str, Any]:
    """Run a lightweight query and confirm the Foundry tables exist."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            existing = set(inspect(connection).get_table_names())
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}

    missing = [name for name in _REQUIRED_TABLES if name not in existing]
    if missing:
        return {"status": "DEGRADED", "detail": f"Missing tables: {', '.join(missing)}"}
    return {"status": "UP", "app": Config.APP_NAME, "foundry_enabled": Config.FEATURE_FOUNDRY_ENABLED}
