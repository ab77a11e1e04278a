from typing import Any, List, Optional

from pydantic import BaseModel, validator

from message_service import MAX_MESSAGE_LENGTH, MAX_USERNAME_LENGTH


class MessageCreate(BaseModel):
    username: str
    message: str

    @validator('username')
    def username_must_be_valid(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Username is required')
        if len(v) > MAX_USERNAME_LENGTH:
            raise ValueError('Username is too long')
        return v

    @validator('message')
    def message_must_be_valid(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Message is required')
        if len(v) > MAX_MESSAGE_LENGTH:
            raise ValueError(f'Message is too long (max {MAX_MESSAGE_LENGTH} characters)')
        return v


class MessageResponse(BaseModel):
    id: int
    username: str
    message: str
    timestamp: str


class MessageData(BaseModel):
    message: MessageResponse


class MessageEnvelope(BaseModel):
    status: str = "success"
    data: MessageData


class MessageListData(BaseModel):
    messages: List[MessageResponse]


class MessageListEnvelope(BaseModel):
    status: str = "success"
    results: int
    data: MessageListData


class ErrorResponse(BaseModel):
    status: str
    statusCode: int
    message: str
    code: Optional[str] = None
    errors: Optional[Any] = None
    detail: Optional[str] = None
