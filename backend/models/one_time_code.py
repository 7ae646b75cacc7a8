from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from services.db import Base

class OneTimeCode(Base):
    """Live sign-in code for an email address. At most one row per email."""
    __tablename__ = "one_time_codes"
    id = Column(Integer, primary_key=True, index=True)
    # Stored lower-cased so lookups are case-insensitive
    email = Column(String(320), unique=True, index=True, nullable=False)
    code = Column(String(6), nullable=False)
    # The code this row replaced; submitting it is reported as not found
    superseded_code = Column(String(6), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<OneTimeCode(email='{self.email}', attempts={self.attempts})>"
