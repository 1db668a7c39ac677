"""eventchain.users

User records as a chained entity.
"""

from eventchain.users.service import UserService
from eventchain.users.store import UserRecord, UserRole, UserStore

__all__ = ["UserRecord", "UserRole", "UserService", "UserStore"]
