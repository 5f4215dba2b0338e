"""
Database models and operations for the chat service.

Uses SQLAlchemy with SQLite for user accounts and messages. Secret-chat
content is stored exactly as received; the service holds no keys.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, select, update, or_, and_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

Base = declarative_base()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ONLINE_WINDOW = timedelta(seconds=20)


def utcnow() -> datetime:
    # SQLite drops tzinfo, so store naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    avatar = Column(String(255), nullable=True)
    last_seen = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)

    def is_online(self, now: Optional[datetime] = None) -> bool:
        if self.last_seen is None:
            return False
        return (now or utcnow()) - self.last_seen < ONLINE_WINDOW

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'username': self.username,
            'avatar': self.avatar,
            'isOnline': self.is_online(),
        }


class Message(Base):
    """Stored message; content is ciphertext for secret messages"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, index=True, nullable=False)
    receiver_id = Column(Integer, index=True, nullable=False)
    content = Column(Text, nullable=False, default="")
    attachment_url = Column(String(255), nullable=True)
    attachment_type = Column(String(16), nullable=True)
    is_read = Column(Boolean, default=False)
    is_secret = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self, viewer_id: int) -> dict:
        return {
            'id': str(self.id),
            'senderId': str(self.sender_id),
            'text': self.content,
            'attachmentUrl': self.attachment_url,
            'attachmentType': self.attachment_type,
            'timestamp': self.created_at.replace(tzinfo=timezone.utc).isoformat(),
            'isMine': self.sender_id == viewer_id,
            'status': 'read' if self.is_read else 'sent',
            'isSecret': bool(self.is_secret),
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./openkey.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password),
                avatar=f"https://api.dicebear.com/7.x/initials/svg?seed={username}",
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.async_session() as session:
            return await session.get(User, user_id)

    async def get_user_by_name(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user_by_name(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def touch(self, user_id: int):
        """Record activity for online status"""
        async with self.async_session() as session:
            await session.execute(
                update(User).where(User.id == user_id).values(last_seen=utcnow())
            )
            await session.commit()

    async def list_users(self, exclude_id: int) -> List[User]:
        """
        List every user except the caller.
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(User).where(User.id != exclude_id).order_by(User.id)
            )
            return list(result.scalars().all())

    async def create_message(self, sender_id: int, receiver_id: int, content: str,
                             attachment_url: Optional[str], attachment_type: Optional[str],
                             is_secret: bool) -> Message:
        async with self.async_session() as session:
            message = Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content or "",
                attachment_url=attachment_url,
                attachment_type=attachment_type,
                is_secret=is_secret,
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def get_conversation(self, user_id: int, partner_id: int) -> List[Message]:
        """
        Full history between two users, oldest first.
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Message).where(or_(
                    and_(Message.sender_id == user_id, Message.receiver_id == partner_id),
                    and_(Message.sender_id == partner_id, Message.receiver_id == user_id),
                )).order_by(Message.created_at, Message.id)
            )
            return list(result.scalars().all())

    async def mark_read(self, partner_id: int, user_id: int):
        """Mark everything the partner sent to the user as read"""
        async with self.async_session() as session:
            await session.execute(
                update(Message)
                .where(Message.sender_id == partner_id, Message.receiver_id == user_id)
                .values(is_read=True)
            )
            await session.commit()
