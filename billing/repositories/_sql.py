from __future__ import annotations

import json
import re
from typing import Any


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def to_jsonb(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, sort_keys=True)
