from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    username = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    # Naive UTC. The ORM stamps inserts with microsecond precision; the server
    # default covers rows written outside the ORM.
    timestamp = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "message": self.message,
            "timestamp": self.timestamp.replace(tzinfo=timezone.utc).isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<Message id={self.id} username={self.username!r}>"
