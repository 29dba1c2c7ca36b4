"""
Case note model - append-only annotation of lifecycle events
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (JSON, Column, DateTime, ForeignKey, Index, String,
                        Text, Uuid, event)
from sqlalchemy.orm import relationship

from caseflow.core.database import Base


class NoteType(str, Enum):
    """Case note type"""
    GENERAL = "general"
    PLANNING = "planning"
    COUNSELING = "counseling"
    ANALYZING = "analyzing"
    ISSUE = "issue"


class ImmutableNoteError(RuntimeError):
    """Raised when something tries to change a persisted note"""


class CaseNote(Base):
    """Case note model"""
    __tablename__ = "case_notes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    case_id = Column(Uuid(as_uuid=True), ForeignKey("cases.id"), nullable=False)
    author_id = Column(String(64), nullable=False)
    note_type = Column(String(20), nullable=False, default=NoteType.GENERAL.value)
    content = Column(Text, nullable=False)
    attachments = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    case = relationship("Case", back_populates="notes")

    __table_args__ = (
        Index("idx_case_notes_case_created", "case_id", "created_at"),
    )

    def __repr__(self):
        return f"<CaseNote(id={self.id}, note_type={self.note_type})>"


@event.listens_for(CaseNote, "before_update")
def _reject_note_update(mapper, connection, target):
    raise ImmutableNoteError(f"Case note {target.id} is append-only")


@event.listens_for(CaseNote, "before_delete")
def _reject_note_delete(mapper, connection, target):
    raise ImmutableNoteError(f"Case note {target.id} is append-only")
