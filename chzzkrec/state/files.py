"""On-disk read/write primitives for state documents."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import structlog

from .models import AuthCookie

logger = structlog.get_logger(__name__)


def read_json_or_default(path: Path, default: Any) -> Any:
    """Return the parsed JSON document at ``path`` or ``default``.

    A missing file, an empty file and a document that fails to parse (for
    instance one caught halfway through a non-atomic save by another
    program) all yield ``default``.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    if not text.strip():
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("unreadable state document", path=str(path), error=str(e))
        return default


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON through a temporary file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.write("\n")
    os.replace(tmp_path, path)


def read_credential(path: Path) -> AuthCookie:
    """Read the two-line credential file (auth first, session second)."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return AuthCookie()
    lines = text.splitlines()
    if len(lines) >= 2 and lines[0].strip() and lines[1].strip():
        return AuthCookie(auth=lines[0].strip(), session=lines[1].strip())
    return AuthCookie()


def write_credential(path: Path, cookie: AuthCookie) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = f"{cookie.auth}\r\n{cookie.session}" if cookie.available else ""
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(text.encode("utf-8"))
    os.replace(tmp_path, path)
