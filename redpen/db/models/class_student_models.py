# /redpen/db/models/class_student_models.py

"""
SQLAlchemy ORM models for the classroom roster. Rosters are maintained by the
CRUD screens; the grading engine only reads them (seat numbers drive the
review ordering).
"""

from sqlalchemy import Column, String, Integer, ForeignKey
from sqlalchemy.orm import relationship

from ..base_class import Base


class Classroom(Base):
    id = Column(String, primary_key=True, index=True)
    name = Column(String, index=True, nullable=False)

    students = relationship("Student", back_populates="classroom", cascade="all, delete-orphan")
    assignments = relationship("Assignment", back_populates="classroom", cascade="all, delete-orphan")


class Student(Base):
    id = Column(String, primary_key=True, index=True)
    classroom_id = Column(String, ForeignKey("classrooms.id"), nullable=False, index=True)
    seat_number = Column(Integer, nullable=False)
    name = Column(String, nullable=False)

    classroom = relationship("Classroom", back_populates="students")
