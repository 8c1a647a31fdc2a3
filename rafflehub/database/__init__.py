from .models import Base, Raffle, Account, Profile
from .session import get_session, engine, AsyncSessionLocal
from .init_db import init_database, check_db_health

__all__ = [
    "Base",
    "Raffle",
    "Account",
    "Profile",
    "get_session",
    "engine",
    "AsyncSessionLocal",
    "init_database",
    "check_db_health",
]
