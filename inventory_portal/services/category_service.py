from typing import List, Optional
from sqlalchemy import func, select, update
from inventory_portal.common.d_logger import Logs
from inventory_portal.db.db_utils import DbUtil
from inventory_portal.db.models import Category, Item
from inventory_portal.ds_exceptions import InvalidInputError, NonExistentCategoryIdError
from inventory_portal.schemas import CategoryDraft, CategoryUpdate, CategoryView

audit_logger = Logs().get_logger("audit")


class CategoryService:
    def __init__(self, db_util: DbUtil):
        self.db_util = db_util

    async def _get(self, session, category_id: int) -> Category:
        category = await session.get(Category, category_id)
        if category is None:
            raise NonExistentCategoryIdError(f"Category {category_id} not found")
        return category

    async def _check_unique(self, session, name: str, category_id: Optional[int] = None):
        query = select(Category.category_id).where(Category.category_name == name)
        if category_id is not None:
            query = query.where(Category.category_id != category_id)
        if await session.scalar(query) is not None:
            raise InvalidInputError(f"Category '{name}' already exists")

    async def get_categories(self) -> List[CategoryView]:
        """All categories, newest first, with their item counts"""
        async with self.db_util.session() as session:
            item_count = func.count(Item.item_id)
            query = (
                select(Category, item_count)
                .outerjoin(Item, Item.category_id == Category.category_id)
                .group_by(Category.category_id)
                .order_by(Category.created_at.desc(), Category.category_id.desc())
            )
            result = await session.execute(query)
            return [
                CategoryView(
                    category_id=category.category_id,
                    category_name=category.category_name,
                    description=category.description,
                    item_count=count,
                )
                for category, count in result.all()
            ]

    async def get_category_by_id(self, category_id: int) -> Category:
        async with self.db_util.session() as session:
            return await self._get(session, category_id)

    async def create_category(self, category_name: str, description: Optional[str] = None,
                              actor: Optional[str] = None) -> Category:
        draft = CategoryDraft(category_name=category_name, description=description)
        async with self.db_util.session() as session:
            await self._check_unique(session, draft.category_name)
            category = Category(category_name=draft.category_name, description=draft.description)
            session.add(category)
            await session.flush()
        audit_logger.info(f"create_category actor={actor} category_id={category.category_id}")
        return category

    async def update_category(self, category_id: int, category_name: Optional[str] = None,
                              description: Optional[str] = None,
                              actor: Optional[str] = None) -> Category:
        changes = CategoryUpdate(category_id=category_id, category_name=category_name,
                                 description=description)
        async with self.db_util.session() as session:
            category = await self._get(session, changes.category_id)
            if changes.category_name is not None:
                await self._check_unique(session, changes.category_name, category_id)
                category.category_name = changes.category_name
            if changes.description is not None:
                category.description = changes.description
            await session.flush()
        audit_logger.info(f"update_category actor={actor} category_id={category_id}")
        return category

    async def delete_category(self, category_id: int, actor: Optional[str] = None) -> bool:
        """Delete a category; its items stay, detached from any category"""
        async with self.db_util.session() as session:
            category = await self._get(session, category_id)
            result = await session.execute(
                update(Item)
                .where(Item.category_id == category_id)
                .values(category_id=None)
                .execution_options(synchronize_session=False)
            )
            await session.delete(category)
        audit_logger.info(
            f"delete_category actor={actor} category_id={category_id} detached_items={result.rowcount}"
        )
        return True
