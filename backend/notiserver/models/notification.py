from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from ..core.database import Base


class NotificationRecord(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)

    message = Column(Text, nullable=False, default="")
    title = Column(String, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    image_url = Column(String, nullable=False, default="")
    analytics_label = Column(String, nullable=False, default="")

    device_tokens = Column(JSON, nullable=False)  # list[str], never empty
    data = Column(JSON, nullable=False, default=dict)  # dict[str, str]

    processed = Column(Boolean, nullable=False, default=False, index=True)
    processing = Column(Boolean, nullable=False, default=False, index=True)

    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
