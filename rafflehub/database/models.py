from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_id() -> str:
    return uuid4().hex


class Raffle(Base):
    __tablename__ = "raffles"

    id = Column(String(32), primary_key=True, default=generate_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    image_url = Column(String(500), nullable=True)
    ticket_price = Column(Numeric(12, 2), nullable=False)
    entries = Column(JSON, nullable=False, default=list)  # Ordered list of entry dicts
    winner = Column(JSON(none_as_null=True), nullable=True)  # Copy of the drawn entry
    random_result = Column(JSON(none_as_null=True), nullable=True)  # Random.org signature data
    creator_id = Column(String(32), nullable=False, index=True)
    creator_profile = Column(JSON(none_as_null=True), nullable=True)  # Snapshot at creation time, never re-synced
    created_at = Column(DateTime, nullable=True, default=datetime.utcnow, index=True)
    version = Column(Integer, nullable=False, default=0)  # Bumped on every update

    def __repr__(self):
        return f"<Raffle(id={self.id}, name={self.name!r}, entries={len(self.entries or [])})>"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(32), primary_key=True, default=generate_id)
    email = Column(String(320), unique=True, nullable=False, index=True)
    password_hash = Column(String(256), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Profile(Base):
    __tablename__ = "profiles"

    user_id = Column(String(32), primary_key=True)
    display_name = Column(String(200), nullable=False, default="")
    bio = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
