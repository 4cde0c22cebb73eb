from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.doccontrol.models import AuditEvent, User


@dataclass(frozen=True)
class RequestContext:
    """
    Forensic metadata for the request that triggered a write.
    Built by the HTTP layer and passed down explicitly; jobs use `system()`.
    """

    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def system(cls, agent: str = "system") -> "RequestContext":
        return cls(request_id=None, ip_address="127.0.0.1", user_agent=agent)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    ctx = context or RequestContext()
    ev = AuditEvent(
        request_id=ctx.request_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=ctx.ip_address,
        user_agent=(ctx.user_agent or "")[:512] or None,
    )
    s.add(ev)
    return ev
