from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(32), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)
    user_code = Column(String(11), unique=True, nullable=True)

    is_admin = Column(Boolean, default=False, nullable=False)


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True)
    name = Column(String(32), unique=True, index=True, nullable=False)
    owner = Column(String(32), nullable=False)
    group_code = Column(String(10), unique=True, nullable=True)

    members = relationship(
        "GroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (UniqueConstraint("group_name", "username", name="uq_group_member"),)

    id = Column(Integer, primary_key=True)
    group_name = Column(String(32), ForeignKey("groups.name", ondelete="CASCADE"), nullable=False, index=True)
    username = Column(String(32), nullable=False, index=True)

    group = relationship("Group", back_populates="members")


class Message(Base):
    __tablename__ = "messages"

    # seq: Einfügereihenfolge, bricht Gleichstände bei created_at
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, index=True, nullable=False)
    username = Column(String(32), nullable=False)
    text = Column(Text, nullable=False)
    chat = Column(String(80), index=True, nullable=False)
    created_at = Column(BigInteger, nullable=False)  # ms seit Epoch


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True)
    username = Column(String(32), nullable=False)
    text = Column(Text, nullable=False)
