from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from threadline.db import Base


class ThreadMessage(Base):
    __tablename__ = "thread_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(String(20), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    role = Column(String(20), nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)

    issue = relationship("Issue", back_populates="messages")

    __table_args__ = (Index("idx_thread_issue", "issue_id"),)
