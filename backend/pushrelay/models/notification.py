from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from ..core.database import Base


class NotificationRecord(Base):
    __tablename__ = "notification_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    target_role = Column(String(32), nullable=True)  # set for role broadcasts instead of user_id
    project_id = Column(Integer, nullable=True, index=True)

    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)

    delivery_status = Column(String(16), default="pending")  # pending | delivered | failed
    retry_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    delivered_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_notification_history_delivery_status", "delivery_status"),
        Index("idx_notification_history_created_at", "created_at"),
    )
