"""
Course catalog port - validates course template identifiers used by prescriptions
"""
from abc import ABC, abstractmethod
from typing import Iterable, List

from sqlalchemy.orm import Session

from caseflow.models.course_template import CourseTemplate


class CourseCatalog(ABC):
    """Catalog of course templates owned by an external service"""

    @abstractmethod
    def find_missing(self, course_template_ids: Iterable[str]) -> List[str]:
        """
        Return the identifiers that are unknown or inactive

        Args:
            course_template_ids: Identifiers to validate

        Returns:
            Unknown identifiers in input order, without repeats
        """


class DatabaseCourseCatalog(CourseCatalog):
    """Catalog backed by the locally synced course_templates table"""

    def __init__(self, db: Session):
        self.db = db

    def find_missing(self, course_template_ids: Iterable[str]) -> List[str]:
        wanted = list(dict.fromkeys(course_template_ids))
        if not wanted:
            return []

        rows = self.db.query(CourseTemplate.id).filter(
            CourseTemplate.id.in_(wanted),
            CourseTemplate.is_active.is_(True)
        ).all()
        known = {row[0] for row in rows}
        return [template_id for template_id in wanted if template_id not in known]
