import logging
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Message

logger = logging.getLogger(__name__)


class MessageStore:
    """SQL-backed durable record of chat messages."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, username: str, message: str) -> Message:
        db_message = Message(username=username, message=message)
        try:
            self.db.add(db_message)
            self.db.commit()
            self.db.refresh(db_message)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error creating chat message: {e}")
            raise
        return db_message

    def find_all(self, limit: int = 100, offset: int = 0) -> List[Message]:
        try:
            return (
                self.db.query(Message)
                .order_by(desc(Message.timestamp), desc(Message.id))
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error finding chat messages: {e}")
            raise

    def find_by_id(self, message_id: int) -> Optional[Message]:
        try:
            return self.db.query(Message).filter(Message.id == message_id).first()
        except SQLAlchemyError as e:
            logger.error(f"Error finding chat message with ID {message_id}: {e}")
            raise

    def delete_by_id(self, message_id: int) -> bool:
        try:
            deleted = self.db.query(Message).filter(Message.id == message_id).delete()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error deleting chat message with ID {message_id}: {e}")
            raise
        return deleted > 0
