"""
SyncLog Model - sync run tracking
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from vendor_alert.database import Base

SYNC_INITIAL = "initial"
SYNC_WEBHOOK = "webhook"
SYNC_MANUAL = "manual"

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


class SyncLog(Base):
    """
    Logs sync runs for debugging and auditing.

    A row is opened with status "running" and closed by the matching
    completion update for the same shop, sync type and entity.
    """

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    shop_domain = Column(String(255), nullable=False, index=True)
    sync_type = Column(String(20), nullable=False)  # initial, webhook, manual
    entity_type = Column(String(50), nullable=False)  # e.g. orders, products, full_sync

    status = Column(String(20), default=STATUS_RUNNING, index=True)
    records_synced = Column(Integer)
    error_message = Column(Text)

    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncLog {self.sync_type}/{self.entity_type} - {self.status}>"

    def mark_complete(self, status: str, error: str = None, records: int = None) -> None:
        """Close the log entry."""
        self.status = status
        self.error_message = error
        self.records_synced = records
        self.completed_at = datetime.utcnow()

    @property
    def duration_ms(self):
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sync_type": self.sync_type,
            "entity_type": self.entity_type,
            "status": self.status,
            "records_synced": self.records_synced,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }
