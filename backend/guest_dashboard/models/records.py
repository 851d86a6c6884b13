"""
Persisted record table
Append-only log of reservation outcomes and inventory alerts
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text
from guest_dashboard.database import Base


class PersistedRecord(Base):
    __tablename__ = "persistence_records"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(64), nullable=False, index=True)  # reservation.confirmed, inventory.alert_raised
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    payload = Column(Text, nullable=False, default="{}")  # JSON
    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<PersistedRecord {self.kind} {self.entity_type}:{self.entity_id}>"
