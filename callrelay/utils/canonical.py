from __future__ import annotations

from typing import Any, Dict

import orjson


def dumps(frame: Dict[str, Any]) -> str:
    """Compact JSON text for a websocket frame."""
    return orjson.dumps(frame).decode("utf-8")


def loads(raw: str | bytes) -> Any:
    # orjson.JSONDecodeError is a ValueError
    return orjson.loads(raw)
