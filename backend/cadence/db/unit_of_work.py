"""Unit of work for database transactions."""

from sqlalchemy.ext.asyncio import AsyncSession


class UnitOfWork:
    """Groups CRUD writes into one transaction.

    CRUD methods commit on their own unless handed a unit of work:

    ```python
    async with UnitOfWork(db) as uow:
        record = await crud.billing_record.create(db, obj_in=record_in, uow=uow)
        await crud.subscription.update_guarded(db, ..., uow=uow)
    # committed on clean exit, rolled back on exception
    ```
    """

    def __init__(self, session: AsyncSession):
        """Initialize the UnitOfWork with a database session."""
        self.session = session
        self._committed = False
        self._rolledback = False

    @property
    def committed(self) -> bool:
        """Whether the transaction has been committed."""
        return self._committed

    async def commit(self) -> None:
        """Commit the transaction; a no-op once committed or rolled back."""
        if not self._committed and not self._rolledback:
            await self.session.commit()
            self._committed = True

    async def rollback(self) -> None:
        """Roll back the transaction; a no-op once committed or rolled back."""
        if not self._committed and not self._rolledback:
            await self.session.rollback()
            self._rolledback = True

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            await self.rollback()
        else:
            await self.commit()
