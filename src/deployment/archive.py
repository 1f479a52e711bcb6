"""Deployment audit archive.

Saves terminal deployments to the ``deployment_records`` table and reads
them back as plain dicts. The ``active_deployments`` table holds one claimed
slot per service, so release processes sharing a database cannot run two
deployments of the same service at once.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.engine import get_sync_session_factory
from src.db.models import ActiveDeployment, DeploymentRecord

from .exceptions import ConflictError
from .models import Deployment

logger = logging.getLogger(__name__)


def save_deployment(session: Session, deployment: Deployment) -> str:
    """Upsert a deployment record. Returns the deployment id."""
    data = deployment.to_dict()
    rec = DeploymentRecord(
        deployment_id=deployment.deployment_id,
        service=deployment.service,
        revision_id=deployment.revision_id,
        status=deployment.status.value,
        failure_reason=deployment.failure_reason,
        blue_target=deployment.blue.routing_target,
        green_target=deployment.green.routing_target,
        blue_weight=deployment.blue.current_weight,
        green_weight=deployment.green.current_weight,
        weight_history=data["weight_history"],
        transitions=data["transitions"],
        started_at=deployment.started_at,
        finished_at=deployment.finished_at,
    )
    session.merge(rec)
    session.flush()
    return deployment.deployment_id


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_dict(r: DeploymentRecord) -> dict:
    return {
        "deployment_id": r.deployment_id,
        "service": r.service,
        "revision_id": r.revision_id,
        "status": r.status,
        "failure_reason": r.failure_reason,
        "blue_target": r.blue_target,
        "green_target": r.green_target,
        "blue_weight": r.blue_weight,
        "green_weight": r.green_weight,
        "weight_history": r.weight_history or [],
        "transitions": r.transitions or [],
        "started_at": r.started_at,
        "finished_at": r.finished_at,
        "archived_at": r.archived_at,
    }


class DeploymentArchive:
    """Session-managing facade over the record helpers."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or get_sync_session_factory()

    def archive(self, deployment: Deployment) -> str:
        if not deployment.is_terminal:
            raise ValueError(
                f"Deployment {deployment.deployment_id} is not terminal "
                f"({deployment.status.value})"
            )
        with self._session_factory() as session:
            deployment_id = save_deployment(session, deployment)
            session.commit()
        logger.info(
            "Archived deployment %s (%s)",
            deployment_id,
            deployment.status.value,
        )
        return deployment_id

    def get(self, deployment_id: str) -> Optional[dict]:
        with self._session_factory() as session:
            rec = session.get(DeploymentRecord, deployment_id)
            return _to_dict(rec) if rec is not None else None

    def list_records(
        self,
        service: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        """Archived deployments, most recently finished first."""
        with self._session_factory() as session:
            query = session.query(DeploymentRecord)
            if service is not None:
                query = query.filter(DeploymentRecord.service == service)
            if status is not None:
                query = query.filter(DeploymentRecord.status == status)
            rows = (
                query.order_by(DeploymentRecord.finished_at.desc())
                .limit(limit)
                .all()
            )
            return [_to_dict(r) for r in rows]

    def reserve(self, service: str, deployment_id: str, ttl_seconds: float) -> None:
        """Claim the service's active slot for ``deployment_id``.

        A claim older than ``ttl_seconds`` is treated as left behind by a
        crashed process and taken over.

        Raises:
            ConflictError: Another deployment holds an unexpired claim.
        """
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            held = session.get(ActiveDeployment, service)
            if held is not None:
                if _as_utc(held.expires_at) > now:
                    raise ConflictError(service, held.deployment_id)
                logger.warning(
                    "Taking over expired %s slot from deployment %s",
                    service,
                    held.deployment_id,
                )
                session.delete(held)
                session.flush()
            session.add(
                ActiveDeployment(
                    service=service,
                    deployment_id=deployment_id,
                    reserved_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                held = session.get(ActiveDeployment, service)
                raise ConflictError(
                    service, held.deployment_id if held is not None else "unknown"
                ) from None
        logger.info("Reserved %s for deployment %s", service, deployment_id)

    def release(self, service: str, deployment_id: str) -> bool:
        """Drop the service's slot if ``deployment_id`` still holds it."""
        with self._session_factory() as session:
            deleted = (
                session.query(ActiveDeployment)
                .filter(
                    ActiveDeployment.service == service,
                    ActiveDeployment.deployment_id == deployment_id,
                )
                .delete()
            )
            session.commit()
        return deleted > 0
