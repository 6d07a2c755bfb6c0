"""
Orphan Callback Model — dead-letter קצר-מועד ל-status callbacks יתומים.

callback עם message_sid שאין לו אירוע שליחה תואם לא נשמר כאירוע מעקב,
אבל כן נרשם כאן כדי שאפשר יהיה לזהות שליחה שלא הספיקה לרשום את ה-SID
שלה. נמחק אוטומטית אחרי ORPHAN_CALLBACK_RETENTION_HOURS.
"""
from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class OrphanCallback(Base):
    """callback מהספק ללא אירוע שליחה מקורי"""

    __tablename__ = "orphan_callbacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_sid = Column(String(64), nullable=False, index=True)
    message_status = Column(String(32), nullable=True)
    error_code = Column(String(16), nullable=True)
    # שדות ה-form כפי שהתקבלו (ללא חתימה)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)
