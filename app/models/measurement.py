from sqlalchemy import Column, Float, ForeignKey, Index, Integer, String

from app.database import Base


class Measurement(Base):
    __tablename__ = "angle_measurements"
    __table_args__ = (Index("ix_angle_measurements_user_day", "user_id", "measured_on"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    image_id = Column(Integer, ForeignKey("images.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    angle = Column(Float, nullable=False)
    angle2 = Column(Float, nullable=False)
    timestamp = Column(String, nullable=False)
    # UTC calendar date of ``timestamp``, YYYY-MM-DD
    measured_on = Column(String, nullable=False)
    memo = Column(String(100), nullable=True)
    icon_ids = Column(String, nullable=True)
