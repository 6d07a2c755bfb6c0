"""
Recipient Model — משפחה/אורח שמקבלים הודעות.

הטבלה שייכת לשירות ניהול האורחים; כאן היא נקראת בלבד — שאילתה אחת
לכל הנמענים של חתונה, עבור הדשבורד.
"""
from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, String

from app.db.database import Base, utcnow
from app.db.models.tracking_event import Channel


class Recipient(Base):
    """נמען (משפחה) בחתונה"""

    __tablename__ = "recipients"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    name = Column(String(200), nullable=False)
    channel_preference = Column(SQLEnum(Channel), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_recipients_tenant", "tenant_id"),
    )
