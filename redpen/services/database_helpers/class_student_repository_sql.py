# /redpen/services/database_helpers/class_student_repository_sql.py

"""
Read-side queries for classrooms and students. Roster editing belongs to the
CRUD screens; the grading engine needs seat numbers and names for ordering
and for labelling failures.
"""

from typing import List, Dict, Optional
from sqlalchemy.orm import Session

from redpen.db.models.class_student_models import Classroom, Student


class ClassStudentRepositorySQL:
    def __init__(self, db_session: Session):
        self.db = db_session

    # --- Classroom Methods ---

    def add_classroom(self, record: Dict) -> Classroom:
        new_classroom = Classroom(**record)
        self.db.add(new_classroom)
        self.db.commit()
        self.db.refresh(new_classroom)
        return new_classroom

    def get_classroom(self, classroom_id: str) -> Optional[Classroom]:
        return self.db.query(Classroom).filter(Classroom.id == classroom_id).first()

    # --- Student Methods ---

    def add_student(self, record: Dict) -> Student:
        new_student = Student(**record)
        self.db.add(new_student)
        self.db.commit()
        self.db.refresh(new_student)
        return new_student

    def get_student(self, student_id: str) -> Optional[Student]:
        return self.db.query(Student).filter(Student.id == student_id).first()

    def get_students_by_classroom(self, classroom_id: str) -> List[Student]:
        """Returns the roster of a classroom ordered by seat number."""
        return (
            self.db.query(Student)
            .filter(Student.classroom_id == classroom_id)
            .order_by(Student.seat_number.asc())
            .all()
        )
