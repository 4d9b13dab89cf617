# commons/services/database_service.py
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from commons.config import settings
from commons.models.database import Base, Expense, ExpenseImage, Member, utcnow
from commons.models.lifecycle import PayoutStatus

logger = logging.getLogger(__name__)


class DatabaseService:
    """Async persistence for members, expenses and expense images"""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or settings.database_url
        self.echo = settings.db_echo if echo is None else echo
        self.engine = None
        self.async_session = None
        self._initialized = False

    async def initialize(self):
        """Create the engine and session factory"""
        if self._initialized:
            return

        try:
            engine_options: Dict[str, Any] = {"echo": self.echo, "future": True}
            if not self.database_url.startswith("sqlite"):
                engine_options.update(
                    pool_size=10,
                    max_overflow=20,
                    pool_pre_ping=True,  # ping before checkout
                    pool_recycle=3600,
                )
            self.engine = create_async_engine(self.database_url, **engine_options)

            self.async_session = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=True
            )

            self._initialized = True
            logger.info("Database service initialized")

        except Exception as e:
            logger.error(f"Database service failed to initialize: {e}")
            raise

    async def create_tables(self):
        await self.initialize()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ready")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error"""
        if not self._initialized:
            await self.initialize()

        session = self.async_session()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database operation rolled back: {e}")
            raise
        finally:
            await session.close()

    async def check_connection(self) -> bool:
        try:
            async with self.get_session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    async def close(self):
        if self.engine:
            await self.engine.dispose()
            self._initialized = False
            logger.info("Database connection pool closed")

    # Members

    async def create_member(self, **values) -> Member:
        async with self.get_session() as session:
            member = Member(**values)
            session.add(member)
            await session.flush()
            logger.info(f"Member created, id: {member.id}")
            return member

    async def get_member(self, member_id: int) -> Optional[Member]:
        async with self.get_session() as session:
            return await session.get(Member, member_id)

    async def get_member_by_key(self, modification_key: str) -> Optional[Member]:
        async with self.get_session() as session:
            result = await session.execute(select(Member).where(Member.modification_key == modification_key))
            return result.scalars().first()

    async def get_member_by_email(self, email: str) -> Optional[Member]:
        async with self.get_session() as session:
            result = await session.execute(select(Member).where(Member.email == email))
            return result.scalars().first()

    # Expenses

    async def create_expense(self, **values) -> Expense:
        try:
            async with self.get_session() as session:
                expense = Expense(**values)
                session.add(expense)
                await session.flush()  # assigns the id
                expense_id = expense.id
        except Exception as e:
            logger.error(f"Failed to create expense: {e}")
            raise

        logger.info(f"Expense created, id: {expense_id}")
        return await self.get_expense(expense_id)

    async def get_expense(self, expense_id: int) -> Optional[Expense]:
        async with self.get_session() as session:
            return await session.get(Expense, expense_id)

    async def list_expenses(
            self,
            submitter_id: Optional[int] = None,
            status: Optional[PayoutStatus] = None
    ) -> List[Expense]:
        query = select(Expense)
        if submitter_id is not None:
            query = query.where(Expense.submitted_by == submitter_id)
        if status is not None:
            query = query.where(Expense.payout_status == PayoutStatus(status))
        query = query.order_by(Expense.created_at, Expense.id)

        async with self.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def transition_expense(
            self,
            expense_id: int,
            expected_status: PayoutStatus,
            values: Dict[str, Any]
    ) -> bool:
        """Conditional update: only applies while the row is still in ``expected_status``.

        Returns False when no row matched, i.e. the expense is gone or another
        request moved it first.
        """
        values = dict(values, updated_at=utcnow())
        async with self.get_session() as session:
            result = await session.execute(
                update(Expense)
                .where(Expense.id == expense_id, Expense.payout_status == PayoutStatus(expected_status))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            affected_rows = result.rowcount

        if affected_rows > 0:
            logger.info(f"Expense {expense_id} updated from {PayoutStatus(expected_status).value} "
                        f"to {values.get('payout_status')}")
            return True
        logger.warning(f"Conditional update matched no row, expense: {expense_id}, "
                       f"expected status: {PayoutStatus(expected_status).value}")
        return False

    async def get_expense_statistics(self) -> List[Dict[str, Any]]:
        """Count and amount totals grouped by payout status"""
        async with self.get_session() as session:
            result = await session.execute(
                text("""
                SELECT payout_status, COUNT(*) AS count, COALESCE(SUM(amount_cents), 0) AS total_amount_cents
                FROM expenses
                GROUP BY payout_status
                ORDER BY payout_status
                """)
            )
            return [dict(row) for row in result.mappings().all()]

    # Expense images

    async def create_expense_image(self, **values) -> ExpenseImage:
        async with self.get_session() as session:
            image = ExpenseImage(**values)
            session.add(image)
            await session.flush()
            logger.info(f"Expense image created, id: {image.id}, expense: {image.expense_id}")
            return image

    async def get_expense_image(self, image_id: int) -> Optional[ExpenseImage]:
        async with self.get_session() as session:
            return await session.get(ExpenseImage, image_id)

    async def list_expense_images(self, expense_id: int) -> List[ExpenseImage]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ExpenseImage)
                .where(ExpenseImage.expense_id == expense_id)
                .order_by(ExpenseImage.created_at, ExpenseImage.id)
            )
            return list(result.scalars().all())

    async def update_expense_image(self, image_id: int, values: Dict[str, Any]) -> Optional[ExpenseImage]:
        async with self.get_session() as session:
            image = await session.get(ExpenseImage, image_id)
            if image is None:
                return None
            for key, value in values.items():
                setattr(image, key, value)
            await session.flush()
            return image

    async def delete_expense_image(self, image_id: int) -> bool:
        async with self.get_session() as session:
            image = await session.get(ExpenseImage, image_id)
            if image is None:
                logger.warning(f"Expense image to delete not found: {image_id}")
                return False
            await session.delete(image)

        logger.info(f"Expense image deleted: {image_id}")
        return True
