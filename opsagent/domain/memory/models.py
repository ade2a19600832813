from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from opsagent.db.base import Base


class ActionLogRecord(Base):
    __tablename__ = "action_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    domain: Mapped[str] = mapped_column(String(32), index=True)
    agent_type: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    summary: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(24))
    input: Mapped[dict[str, Any]] = mapped_column(JSON)
    output: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.8)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
