from __future__ import annotations

import dataclasses
import json
from typing import Any


def _default(obj: Any) -> Any:
    # Content dataclasses go out as plain dicts; dataclass classes are not values.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"cannot encode {type(obj).__name__} as JSON")


def dumps(obj: Any, *, indent: int | None = None) -> str:
    """Stable JSON text (sorted keys) used for persistence, hashing and requests."""

    return json.dumps(obj, default=_default, indent=indent, sort_keys=True, ensure_ascii=False)


def loads(data: str | bytes) -> Any:
    return json.loads(data)
