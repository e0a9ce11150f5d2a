from sqlalchemy import Column, String, Integer, DateTime, Text
from app.core.database import Base
from datetime import datetime


class Assignment(Base):
    __tablename__ = "assignments"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    subject = Column(String, nullable=True)
    assignment_type = Column(String, nullable=True)  # 'essay', 'research_paper', 'report', ...
    academic_level = Column(String, nullable=True)
    status = Column(String, nullable=False, default='completed')  # 'draft', 'in-progress', 'completed'
    content = Column(Text, nullable=False)
    requirements = Column(Text, nullable=True)
    word_count = Column(Integer, nullable=False, default=0)
    due_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
