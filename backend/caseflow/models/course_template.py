"""
Course template model - local mirror of the external course catalog
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String

from caseflow.core.database import Base


class CourseTemplate(Base):
    """Course template available for prescriptions"""
    __tablename__ = "course_templates"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    synced_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<CourseTemplate(id={self.id}, name={self.name})>"
