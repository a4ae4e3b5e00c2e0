# /redpen/services/database_helpers/grading_repository_sql.py

"""
This module contains all the raw SQLAlchemy queries for the Assignment and
Submission tables. It is the direct interface to the database for answer keys
and grading outcomes.

Updates are partial merges applied to a single record and committed at once.
The store never locks a submission across calls, so two writers racing on the
same record resolve as last-write-wins.
"""

from typing import List, Dict, Optional
from sqlalchemy.orm import Session

from redpen.db.models.grading_models import Assignment, Submission


class GradingRepositorySQL:
    def __init__(self, db_session: Session):
        self.db = db_session

    # --- Assignment Methods ---

    def add_assignment(self, record: Dict) -> Assignment:
        new_assignment = Assignment(**record)
        self.db.add(new_assignment)
        self.db.commit()
        self.db.refresh(new_assignment)
        return new_assignment

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self.db.query(Assignment).filter(Assignment.id == assignment_id).first()

    def update_assignment_answer_key(self, assignment_id: str, answer_key: Optional[Dict]) -> Optional[Assignment]:
        """Replaces the stored answer key JSON of an assignment."""
        assignment = self.get_assignment(assignment_id)
        if assignment:
            assignment.answer_key = answer_key
            self.db.commit()
            self.db.refresh(assignment)
        return assignment

    # --- Submission Methods ---

    def add_submission(self, record: Dict) -> Submission:
        new_submission = Submission(**record)
        self.db.add(new_submission)
        self.db.commit()
        self.db.refresh(new_submission)
        return new_submission

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        return self.db.query(Submission).filter(Submission.id == submission_id).first()

    def get_submissions_by_assignment(self, assignment_id: str) -> List[Submission]:
        return (
            self.db.query(Submission)
            .filter(Submission.assignment_id == assignment_id)
            .order_by(Submission.created_at.asc(), Submission.id.asc())
            .all()
        )

    def update_submission(self, submission_id: str, data: Dict) -> Optional[Submission]:
        """
        Merges `data` into a submission record. Only the keys present in
        `data` are touched; everything else on the row is left as it is.
        """
        submission = self.get_submission(submission_id)
        if submission:
            for key, value in data.items():
                setattr(submission, key, value)
            self.db.commit()
            self.db.refresh(submission)
        return submission

    def delete_submission(self, submission_id: str) -> bool:
        submission = self.get_submission(submission_id)
        if submission:
            self.db.delete(submission)
            self.db.commit()
            return True
        return False
