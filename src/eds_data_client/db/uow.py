from __future__ import annotations
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from eds_data_client.exceptions import DatabaseError


class AsyncUnitOfWork:
    """
    One transaction: commits on clean exit, rolls back when the block raises.
    SQLAlchemy failures leave as DatabaseError, domain errors pass through unchanged.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self):
        self.session = self._sf()
        await self.session.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc:
                await self.session.rollback()
            else:
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise DatabaseError(f"Transaction failed: {e}") from e
        finally:
            await self.session.__aexit__(exc_type, exc, tb)
        if isinstance(exc, SQLAlchemyError):
            raise DatabaseError(str(exc)) from exc
        return False
