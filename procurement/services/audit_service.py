from __future__ import annotations

from sqlalchemy.orm import Session

from procurement.models import AuditLog


def log_audit(
    db: Session,
    *,
    corporation_uuid: str | None,
    actor: str | None,
    action: str,
    entity_uuid: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            corporation_uuid=corporation_uuid,
            actor=actor,
            action=action,
            entity_uuid=entity_uuid,
            meta=metadata or {},
        )
    )
