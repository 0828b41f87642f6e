import datetime as dt
from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import relationship
from .config import FREE_GENERATIONS_LIMIT
from .db import Base


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(Integer, primary_key=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)

    gemini_api_key = Column(Text, nullable=True)  # NULL or "" means not set
    generations_used = Column(Integer, default=0, nullable=False)
    generations_limit = Column(Integer, default=FREE_GENERATIONS_LIMIT, nullable=False)
    quota_exhausted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    images = relationship("Image", back_populates="user", cascade="all, delete-orphan")
    generations = relationship("Generation", back_populates="user", cascade="all, delete-orphan")


class PoolCredential(Base):
    __tablename__ = "pool_credentials"
    id = Column(Integer, primary_key=True)
    key_id = Column(String(64), unique=True, nullable=False)  # admin-1, admin-2, ...
    api_key = Column(Text, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class PoolCursor(Base):
    """Single-row table holding the shared round-robin position."""
    __tablename__ = "pool_cursor"
    id = Column(Integer, primary_key=True)
    position = Column(Integer, default=0, nullable=False)


class Image(Base):
    __tablename__ = "images"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("profiles.id", ondelete="CASCADE"), index=True, nullable=False)
    url = Column(Text, nullable=False)
    public_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("Profile", back_populates="images")
    generations = relationship("Generation", back_populates="image")


class Generation(Base):
    __tablename__ = "generations"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("profiles.id", ondelete="CASCADE"), index=True, nullable=False)
    image_id = Column(Integer, ForeignKey("images.id", ondelete="CASCADE"), index=True, nullable=False)

    inputs = Column(JSON, nullable=False)
    results = Column(JSON, nullable=False)
    api_key_source = Column(String(8), nullable=False)  # own|pool
    admin_key_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("Profile", back_populates="generations")
    image = relationship("Image", back_populates="generations")
