"""Best-effort audit log writer."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from core.models import AuditEntry

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 600
MAX_META_CHARS = 6000


def _bounded_meta(meta: dict[str, Any] | None) -> dict[str, Any]:
    if not meta:
        return {}
    encoded = json.dumps(meta, default=str)
    if len(encoded) <= MAX_META_CHARS:
        return json.loads(encoded)
    return {"truncated": True, "preview": encoded[:MAX_META_CHARS]}


async def write_audit(
    storage: Any,
    action: str,
    detail: str = "",
    user_id: str | None = None,
    host_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> AuditEntry | None:
    """Append an audit entry. Failures are logged and never propagate."""
    entry = AuditEntry(
        id=f"aud-{uuid.uuid4().hex[:8]}",
        ts=datetime.now(timezone.utc),
        action=action,
        detail=detail[:MAX_DETAIL_CHARS],
        user_id=user_id,
        host_id=host_id,
        meta=_bounded_meta(meta),
    )
    try:
        await storage.append_audit(entry)
    except Exception as exc:
        logger.warning("Audit write failed for %s: %s", action, exc)
        return None
    return entry
