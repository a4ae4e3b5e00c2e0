# /redpen/db/models/grading_models.py

"""
SQLAlchemy ORM models for the `Assignment` (which owns the answer key) and the
`Submission` (one student's captured page plus its grading outcome).
"""

from sqlalchemy import Column, String, Float, JSON, DateTime, ForeignKey, LargeBinary, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..base_class import Base


class Assignment(Base):
    id = Column(String, primary_key=True, index=True)
    classroom_id = Column(String, ForeignKey("classrooms.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    domain = Column(String, nullable=True)
    # Stored in normalized form; totalScore is recomputed on read.
    answer_key = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    classroom = relationship("Classroom", back_populates="assignments")
    submissions = relationship("Submission", back_populates="assignment", cascade="all, delete-orphan")


class Submission(Base):
    id = Column(String, primary_key=True, index=True)
    assignment_id = Column(String, ForeignKey("assignments.id"), nullable=False, index=True)
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="missing")

    # Either representation may be present; the other is derived on demand.
    image_blob = Column(LargeBinary, nullable=True)
    image_base64 = Column(Text, nullable=True)

    score = Column(Float, nullable=True)
    feedback = Column(String, nullable=True)
    grading_result = Column(JSON, nullable=True)
    graded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    assignment = relationship("Assignment", back_populates="submissions")
    student = relationship("Student")
