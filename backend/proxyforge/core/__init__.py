"""
Proxy Forge - Core Package
==========================

Configuration, persistence, error taxonomy and schemas.
"""

from proxyforge.core.config import settings
from proxyforge.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
