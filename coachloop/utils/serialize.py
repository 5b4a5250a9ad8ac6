import json
from typing import Any


def dump_json(value: Any) -> str:
    """Deterministic JSON rendering (sorted keys) used wherever prompts are built."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


__all__ = ["dump_json"]
