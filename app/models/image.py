from sqlalchemy import Column, Float, ForeignKey, Integer, String

from app.database import Base


class Image(Base):
    __tablename__ = "images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    hash_key = Column(String, nullable=False, unique=True)
    created_at = Column(String, nullable=False)
    processed_angle = Column(Float, nullable=True)
    processed_angle2 = Column(Float, nullable=True)
    is_processed = Column(Integer, nullable=False, default=0)
