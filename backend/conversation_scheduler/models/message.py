from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.dates import utcnow


class MessageType(str, Enum):
    CUSTOMER = "customer"
    BOT_AGENT = "bot_agent"
    HUMAN_AGENT = "human_agent"
    SYSTEM = "system"


# Messages that count as conversational turns; system messages are internal
IN_SCOPE_MESSAGE_TYPES = (
    MessageType.CUSTOMER.value,
    MessageType.BOT_AGENT.value,
    MessageType.HUMAN_AGENT.value,
)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, index=True)
    sender = Column(String, nullable=True)

    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)

    msg_metadata = Column(JSON, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    conversation = relationship("Conversation", back_populates="messages")

    def __repr__(self):
        return f"<Message(id={self.id}, conversation_id={self.conversation_id}, type='{self.type}')>"
