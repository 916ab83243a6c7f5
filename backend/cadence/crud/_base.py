"""Base class for CRUD operations."""

from typing import Any, Generic, Optional, Type, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.unit_of_work import UnitOfWork
from cadence.models._base import Base

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    """Replace str-enums with their values before they reach String columns."""
    return {key: getattr(value, "value", value) for key, value in values.items()}


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """CRUD base class for billing tables.

    Billing rows are written by system processes, so there is no user or
    organization scoping here. Rows are never deleted.
    """

    def __init__(self, model: Type[ModelType]):
        """CRUD object with default methods.

        Args:
        ----
            model (Type[ModelType]): The model to be used in the CRUD operations.

        """
        self.model = model

    async def get(self, db: AsyncSession, id: UUID) -> Optional[ModelType]:
        """Get a single object by ID.

        Args:
        ----
            db (AsyncSession): The database session.
            id (UUID): The UUID of the object to get.

        Returns:
        -------
            Optional[ModelType]: The object with the given ID.

        """
        result = await db.execute(
            select(self.model).where(self.model.id == id).execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    async def get_all(self, db: AsyncSession, *, skip: int = 0, limit: int = 100) -> list[ModelType]:
        """Get multiple objects ordered by creation time."""
        query = select(self.model).order_by(self.model.created_at).offset(skip).limit(limit)
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.unique().scalars().all())

    async def create(
        self,
        db: AsyncSession,
        *,
        obj_in: Union[CreateSchemaType, dict[str, Any]],
        uow: Optional[UnitOfWork] = None,
    ) -> ModelType:
        """Create a new object.

        Args:
        ----
            db (AsyncSession): The database session.
            obj_in (CreateSchemaType): The object to create.
            uow (UnitOfWork, optional): Unit of work for transaction control.
                If not provided, auto-commits the transaction.

        Returns:
        -------
            ModelType: The created object, flushed so database defaults are populated.

        """
        if not isinstance(obj_in, dict):
            obj_in = obj_in.model_dump()
        db_obj = self.model(**_plain(obj_in))
        db.add(db_obj)
        await db.flush()

        if uow is None:
            await db.commit()
            await db.refresh(db_obj)

        return db_obj

    async def update(
        self,
        db: AsyncSession,
        *,
        db_obj: ModelType,
        obj_in: Union[UpdateSchemaType, dict[str, Any]],
        uow: Optional[UnitOfWork] = None,
    ) -> ModelType:
        """Update an object without a precondition.

        Args:
        ----
            db (AsyncSession): The database session.
            db_obj (ModelType): The object to update.
            obj_in (Union[UpdateSchemaType, Dict[str, Any]]): The new object data.
            uow (UnitOfWork, optional): Unit of work for transaction control.

        Returns:
        -------
            ModelType: The updated object

        """
        if not isinstance(obj_in, dict):
            obj_in = obj_in.model_dump(exclude_unset=True)

        for key, value in _plain(obj_in).items():
            if hasattr(db_obj, key):
                setattr(db_obj, key, value)
        db.add(db_obj)
        await db.flush()

        if uow is None:
            await db.commit()
            await db.refresh(db_obj)

        return db_obj
