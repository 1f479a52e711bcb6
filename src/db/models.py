"""SQLAlchemy ORM models for the release tooling.

Tables:
- deployment_records: terminal blue/green deployments archived for audit
- active_deployments: one claimed slot per service while a deployment runs
"""

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    Text,
    func,
)

from src.db.base import Base


class DeploymentRecord(Base):
    """Archived deployment in a terminal state (COMPLETE, ROLLED_BACK, FAILED)."""

    __tablename__ = "deployment_records"

    deployment_id = Column(String(36), primary_key=True)
    service = Column(String(100), nullable=False, index=True)
    revision_id = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, index=True)
    failure_reason = Column(Text, nullable=True)
    blue_target = Column(String(500), nullable=False)
    green_target = Column(String(500), nullable=False)
    blue_weight = Column(Integer, nullable=False)
    green_weight = Column(Integer, nullable=False)
    weight_history = Column(JSON, nullable=True)
    transitions = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime, server_default=func.now(), index=True)

    def __repr__(self):
        return (
            f"<DeploymentRecord {self.deployment_id} {self.service} "
            f"status={self.status}>"
        )


class ActiveDeployment(Base):
    """A service's claimed deployment slot, shared by every release process."""

    __tablename__ = "active_deployments"

    service = Column(String(100), primary_key=True)
    deployment_id = Column(String(36), nullable=False)
    reserved_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<ActiveDeployment {self.service} held by {self.deployment_id}>"
