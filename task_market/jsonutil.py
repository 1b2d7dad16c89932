from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def model_json(model: BaseModel) -> str:
    """Stable JSON text of a pydantic model (datetimes as ISO strings)."""
    return stable_json_dumps(model.model_dump(mode="json"))
