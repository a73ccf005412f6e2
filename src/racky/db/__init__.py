from .db import Base, create_db, db_session

__all__ = ["Base", "create_db", "db_session"]
