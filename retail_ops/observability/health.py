from __future__ import annotations

from typing import Dict

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from retail_ops.database import engine as default_engine


def check_database_health(engine: Engine = default_engine) -> Dict[str, str]:
    """Run a lightweight query to confirm the store answers."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": exc.__class__.__name__}
