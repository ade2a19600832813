from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from opsagent.db.base import Base


class ApprovalRequestRecord(Base):
    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    agent_type: Mapped[str] = mapped_column(String)
    tool_name: Mapped[str] = mapped_column(String)
    category: Mapped[str] = mapped_column(String(32))
    proposed_action: Mapped[dict[str, Any]] = mapped_column(JSON)
    reasoning: Mapped[str] = mapped_column(Text, default='')
    impact: Mapped[dict[str, Any]] = mapped_column(JSON)
    is_reversible: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(16), index=True, default='PENDING')
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    modifications: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
