import logging
from contextlib import contextmanager
from typing import List, Optional

from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import get_db
from errors import ChatError, ConflictError, InternalError, NotFoundError, ValidationError
from message_store import MessageStore
from models import Message

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 255
MAX_MESSAGE_LENGTH = 1000
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


@contextmanager
def translate_store_errors(action: str, code: str):
    """Let known chat errors through, map everything else onto the error taxonomy."""
    try:
        yield
    except ChatError:
        raise
    except IntegrityError as e:
        logger.warning(f"Constraint violation while trying to {action}: {e.orig}")
        raise ConflictError("Duplicate entry") from e
    except Exception as e:
        logger.exception(f"Failed to {action}")
        raise InternalError(f"Failed to {action}", code=code, cause=e) from e


def _clean(value, field: str, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field.capitalize()} is required",
                              details=[{"field": field, "msg": f"{field.capitalize()} is required"}])
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field.capitalize()} is too long",
                              details=[{"field": field, "msg": f"Must be at most {max_length} characters"}])
    return value


def clamp_page(limit: Optional[int], offset: Optional[int]):
    limit = DEFAULT_PAGE_SIZE if limit is None else int(limit)
    offset = 0 if offset is None else int(offset)
    return max(1, min(limit, MAX_PAGE_SIZE)), max(offset, 0)


class MessageService:
    """Business rules for chat messages on top of a MessageStore."""

    def __init__(self, store: MessageStore):
        self.store = store

    def create_message(self, username, message) -> Message:
        username = _clean(username, "username", MAX_USERNAME_LENGTH)
        message = _clean(message, "message", MAX_MESSAGE_LENGTH)

        with translate_store_errors("create message", "MESSAGE_CREATION_ERROR"):
            created = self.store.create(username=username, message=message)
        logger.info(f"Message {created.id} created by {created.username}")
        return created

    def list_messages(self, limit: Optional[int] = DEFAULT_PAGE_SIZE, offset: Optional[int] = 0) -> List[Message]:
        limit, offset = clamp_page(limit, offset)
        with translate_store_errors("fetch messages", "MESSAGES_FETCH_ERROR"):
            return self.store.find_all(limit, offset)

    def get_message(self, message_id: int) -> Message:
        with translate_store_errors("fetch message", "MESSAGE_FETCH_ERROR"):
            message = self.store.find_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def delete_message(self, message_id: int) -> bool:
        with translate_store_errors("delete message", "MESSAGE_DELETION_ERROR"):
            if self.store.find_by_id(message_id) is None:
                return False
            deleted = self.store.delete_by_id(message_id)
        if deleted:
            logger.info(f"Message {message_id} deleted")
        return deleted


def get_message_service(db: Session = Depends(get_db)) -> MessageService:
    return MessageService(MessageStore(db))
