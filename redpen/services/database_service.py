# /redpen/services/database_service.py

from typing import List, Dict, Optional, Generator
from sqlalchemy.orm import Session
from fastapi import Depends

# --- Core Database Setup ---
from redpen.db.database import get_db

# --- Repository Imports ---
from .database_helpers.class_student_repository_sql import ClassStudentRepositorySQL
from .database_helpers.grading_repository_sql import GradingRepositorySQL


class DatabaseService:
    """
    Facade over the SQL repositories. Services depend on this class only, which
    keeps them testable with a `MagicMock` or an in-memory SQLite session.
    """

    def __init__(self, db_session: Session):
        if db_session is None:
            raise ValueError("A database session is required.")
        self.class_student_repo = ClassStudentRepositorySQL(db_session)
        self.grading_repo = GradingRepositorySQL(db_session)

    # --- CLASSROOM & STUDENT METHODS (DELEGATED) ---
    def add_classroom(self, record: Dict): return self.class_student_repo.add_classroom(record)
    def get_classroom(self, classroom_id: str): return self.class_student_repo.get_classroom(classroom_id)
    def add_student(self, record: Dict): return self.class_student_repo.add_student(record)
    def get_student(self, student_id: str): return self.class_student_repo.get_student(student_id)
    def get_students_by_classroom(self, classroom_id: str) -> List: return self.class_student_repo.get_students_by_classroom(classroom_id)

    # --- ASSIGNMENT METHODS (DELEGATED) ---
    def add_assignment(self, record: Dict): return self.grading_repo.add_assignment(record)
    def get_assignment(self, assignment_id: str): return self.grading_repo.get_assignment(assignment_id)
    def update_assignment_answer_key(self, assignment_id: str, answer_key: Optional[Dict]):
        return self.grading_repo.update_assignment_answer_key(assignment_id, answer_key)

    # --- SUBMISSION METHODS (DELEGATED) ---
    def add_submission(self, record: Dict): return self.grading_repo.add_submission(record)
    def get_submission(self, submission_id: str): return self.grading_repo.get_submission(submission_id)
    def get_submissions_by_assignment(self, assignment_id: str) -> List: return self.grading_repo.get_submissions_by_assignment(assignment_id)
    def update_submission(self, submission_id: str, data: Dict): return self.grading_repo.update_submission(submission_id, data)
    def delete_submission(self, submission_id: str) -> bool: return self.grading_repo.delete_submission(submission_id)


# --- DEPENDENCY PROVIDER ---
def get_db_service(db: Session = Depends(get_db)) -> Generator[DatabaseService, None, None]:
    """FastAPI dependency that provides a DatabaseService bound to the request's session."""
    yield DatabaseService(db_session=db)
