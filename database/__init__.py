from .models import ChannelCredential, ReviewSyncJob, Review
from .database import get_db, init_db, SessionLocal, Base

__all__ = [
    "ChannelCredential",
    "ReviewSyncJob",
    "Review",
    "get_db",
    "init_db",
    "SessionLocal",
    "Base",
]
