from sqlalchemy import Column, Integer, String, Boolean, DateTime
from ..core.database import Base
from ..utils.dates import utcnow

class User(Base):
    """Human agent; the target of ``Conversation.assigned_user_id``."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
