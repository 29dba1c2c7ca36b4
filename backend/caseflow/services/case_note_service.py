"""
Case notes - append-only audit annotations
"""
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from caseflow.models.case import Case
from caseflow.models.case_note import CaseNote, NoteType


class CaseNoteService:
    """Append and list case notes"""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        case: Case,
        author_id: str,
        note_type: NoteType,
        content: str,
        attachments: Optional[List[Any]] = None,
    ) -> CaseNote:
        note = CaseNote(
            case_id=case.id,
            author_id=author_id,
            note_type=note_type.value,
            content=content,
            attachments=attachments,
        )
        self.db.add(note)
        self.db.flush()
        return note

    def list_for_case(self, case_id: UUID, note_type: Optional[NoteType] = None) -> List[CaseNote]:
        query = self.db.query(CaseNote).filter(CaseNote.case_id == case_id)
        if note_type:
            query = query.filter(CaseNote.note_type == note_type.value)
        return query.order_by(CaseNote.created_at).all()
