from sqlalchemy import JSON, Boolean, Column, Float, Text
from sqlalchemy.types import TIMESTAMP
from sqlalchemy.sql import func

from sales_agent.database import Base


class ConversationRecord(Base):
    __tablename__ = "conversations"

    user_id = Column(Text, primary_key=True)  # channel identity, e.g. phone number
    phase = Column(JSON, nullable=False)  # {"phase": "...", **fields}
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    is_simulation = Column(Boolean, nullable=False, default=False)
    last_activity_at = Column(Float)  # epoch ms
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
