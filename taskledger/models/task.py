"""Task model - one unit of work owned by a user."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, Date, DateTime, Enum as SQLEnum
from taskledger.database import Base
from taskledger.models.enums import TaskPriority, TaskStatus


class Task(Base):
    """
    A task with a progress percentage and a completion status.

    Invariants enforced in the service layer:
    - progress is an integer in [0, 100]
    - status follows progress on every progress write; only a manual
      toggle may leave them disagreeing
    - every write bumps version (compare-and-set key)
    """
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=False)
    priority = Column(SQLEnum(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    due_date = Column(Date, nullable=True)  # Calendar day, no timezone
    progress = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.INCOMPLETE)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
