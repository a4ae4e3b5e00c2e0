# /redpen/db/base.py

# Central registry for all SQLAlchemy models. Importing them here ensures the
# Base metadata knows about every table when Alembic runs its auto-generation scan.

from .base_class import Base

from .models.class_student_models import Classroom, Student
from .models.grading_models import Assignment, Submission
