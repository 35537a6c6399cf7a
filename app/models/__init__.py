from app.models.user import User
from app.models.image import Image
from app.models.measurement import Measurement

__all__ = ["User", "Image", "Measurement"]
