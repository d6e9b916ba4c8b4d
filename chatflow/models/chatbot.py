from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Session

from chatflow.models.base import Base


class Chatbot(Base):
    __tablename__ = "chatbots"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    device_id = Column(String, nullable=True, index=True)  # null means every device
    trigger_type = Column(String(20), nullable=False, default="keyword")
    trigger_keywords = Column(Text, nullable=False, default="")
    is_active = Column(Boolean, default=False)

    # Flow graph, stored wholesale as JSON
    nodes = Column(JSON, nullable=False, default=list)
    edges = Column(JSON, nullable=False, default=list)

    # Metadata
    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def create(cls, db: Session, chatbot_data: Dict[str, Any]) -> "Chatbot":
        """Create a new chatbot."""
        db_chatbot = cls(**chatbot_data)
        db.add(db_chatbot)
        db.commit()
        db.refresh(db_chatbot)
        return db_chatbot

    @classmethod
    def get_by_id(cls, db: Session, chatbot_id: int) -> Optional["Chatbot"]:
        return db.query(cls).filter(cls.id == chatbot_id).first()

    @classmethod
    def get_all(cls, db: Session, skip: int = 0, limit: int = 100) -> List["Chatbot"]:
        return db.query(cls).order_by(cls.created_at.desc()).offset(skip).limit(limit).all()

    @classmethod
    def get_active_for_device(cls, db: Session, device_id: str) -> List["Chatbot"]:
        """Active chatbots bound to the device or to no device at all."""
        return db.query(cls).filter(
            cls.is_active == True,
            (cls.device_id == device_id) | (cls.device_id.is_(None))
        ).order_by(cls.id).all()

    @classmethod
    def update(cls, db: Session, chatbot_id: int, chatbot_data: Dict[str, Any]) -> Optional["Chatbot"]:
        db_chatbot = cls.get_by_id(db, chatbot_id)
        if not db_chatbot:
            return None

        for key, value in chatbot_data.items():
            if hasattr(db_chatbot, key):
                setattr(db_chatbot, key, value)

        db.commit()
        db.refresh(db_chatbot)
        return db_chatbot

    @classmethod
    def delete(cls, db: Session, chatbot_id: int) -> bool:
        db_chatbot = cls.get_by_id(db, chatbot_id)
        if not db_chatbot:
            return False

        db.delete(db_chatbot)
        db.commit()
        return True

    @classmethod
    def record_execution(cls, db: Session, chatbot_id: int) -> Optional["Chatbot"]:
        db_chatbot = cls.get_by_id(db, chatbot_id)
        if not db_chatbot:
            return None

        db_chatbot.execution_count = (db_chatbot.execution_count or 0) + 1
        db_chatbot.last_executed_at = datetime.utcnow()
        db.commit()
        db.refresh(db_chatbot)
        return db_chatbot
