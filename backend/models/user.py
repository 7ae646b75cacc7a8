from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from services.db import Base

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Flags carried into session claims
    uf_email_verified = Column(Boolean, default=False, nullable=False)
    profile_completed = Column(Boolean, default=False, nullable=False)

    # Profile information
    name = Column(String(100), nullable=True)
    phone_number = Column(String(10), nullable=True)

    trust_score = Column(Integer, default=0, nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (f"<User(email='{self.email}', verified={self.uf_email_verified}, "
                f"profile_completed={self.profile_completed})>")
