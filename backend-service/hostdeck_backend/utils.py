from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def dumps_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=True)


def tail_text(text: str, *, max_lines: int = 20, max_chars: int = 2000) -> str:
    lines = text.strip().splitlines()[-max_lines:]
    joined = "\n".join(lines)
    if len(joined) > max_chars:
        joined = joined[-max_chars:]
    return joined
