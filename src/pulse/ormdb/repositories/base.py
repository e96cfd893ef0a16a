"""Base repository class with common functionality."""

from typing import Optional

from sqlalchemy.orm import Session

from ..database import get_session_factory


class BaseRepository:
    """
    Base repository class providing common session management.

    Repositories flush their writes; the session owner decides when to
    commit, so several repository calls can share one transaction.
    """

    def __init__(self, session: Optional[Session] = None):
        self.session = session or get_session_factory()()
        self._external_session = session is not None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._external_session:
            if exc_type is None:
                self.session.commit()
            else:
                self.session.rollback()
            self.session.close()
