from typing import List, Optional
from sqlalchemy import func, select
from inventory_portal.common.d_logger import Logs
from inventory_portal.constants import RequestStatus, UserRole
from inventory_portal.db.db_utils import DbUtil
from inventory_portal.db.models import Approval, Request, RequestApprover, User
from inventory_portal.ds_exceptions import (InvalidInputError, InvalidStateError,
                                            NonExistentUserIdError)
from inventory_portal.schemas import UserDraft, UserUpdate

audit_logger = Logs().get_logger("audit")


class UserService:
    """Directory of the people who request, approve and issue stock.

    Authentication lives with the identity provider; ids handed to the
    workflow are trusted as given.
    """

    def __init__(self, db_util: DbUtil):
        self.db_util = db_util

    async def _get(self, session, user_id: int) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise NonExistentUserIdError(f"User {user_id} not found")
        return user

    async def get_users(self) -> List[User]:
        async with self.db_util.session() as session:
            result = await session.execute(select(User).order_by(User.user_id))
            return list(result.scalars().all())

    async def get_user_by_id(self, user_id: int) -> User:
        async with self.db_util.session() as session:
            return await self._get(session, user_id)

    async def get_user_by_name(self, user_name: str) -> Optional[User]:
        async with self.db_util.session() as session:
            return await session.scalar(select(User).where(User.user_name == user_name))

    async def create_user(self, user_name: str, full_name: Optional[str] = None,
                          role=UserRole.Requester, actor: Optional[str] = None) -> User:
        draft = UserDraft(user_name=user_name, full_name=full_name, role=role)

        async with self.db_util.session() as session:
            exists = await session.scalar(select(User.user_id).where(User.user_name == draft.user_name))
            if exists is not None:
                raise InvalidInputError(f"User '{draft.user_name}' already exists")
            user = User(**draft.model_dump())
            session.add(user)
            await session.flush()
        audit_logger.info(f"create_user actor={actor} user_id={user.user_id} role={draft.role.value}")
        return user

    async def update_user(self, user_id: int, full_name: Optional[str] = None,
                          role=None, actor: Optional[str] = None) -> User:
        """Change a user's display name or role.

        A user who loses the approver role drops out of "all approvers"
        selections at once and can no longer decide on requests already
        assigned to them.
        """
        changes = UserUpdate(user_id=user_id, full_name=full_name, role=role)

        async with self.db_util.session() as session:
            user = await self._get(session, changes.user_id)
            previous_role = user.role
            if changes.full_name is not None:
                user.full_name = changes.full_name.strip()
            if changes.role is not None:
                user.role = changes.role
            await session.flush()
        audit_logger.info(
            f"update_user actor={actor} user_id={user_id} role={previous_role.value}->{user.role.value}"
        )
        return user

    async def update_user_role(self, user_id: int, role, actor: Optional[str] = None) -> User:
        if role is None:
            raise InvalidInputError("role is required")
        return await self.update_user(user_id, role=role, actor=actor)

    async def delete_user(self, user_id: int, actor: Optional[str] = None) -> bool:
        """Remove a user who has no part in any request.

        Users with approval history are kept for the audit trail; demote them
        with update_user_role instead.
        """
        UserUpdate(user_id=user_id)
        async with self.db_util.session() as session:
            user = await self._get(session, user_id)
            pending = await session.scalar(
                select(func.count(RequestApprover.request_id))
                .join(Request, Request.request_id == RequestApprover.request_id)
                .where(RequestApprover.user_id == user_id,
                       Request.status == RequestStatus.Pending)
            )
            if pending:
                raise InvalidStateError(
                    f"User '{user.user_name}' is assigned to {pending} pending request(s) "
                    f"and cannot be deleted"
                )
            assigned = await session.scalar(
                select(func.count(RequestApprover.request_id)).where(RequestApprover.user_id == user_id)
            )
            decided = await session.scalar(
                select(func.count(Approval.approval_id)).where(Approval.approver_id == user_id)
            )
            if assigned or decided:
                raise InvalidStateError(
                    f"User '{user.user_name}' appears in the history of {assigned} request(s); "
                    f"change their role instead"
                )
            await session.delete(user)
        audit_logger.info(f"delete_user actor={actor} user_id={user_id} user_name={user.user_name!r}")
        return True

    async def list_approvers(self) -> List[User]:
        """Users who can be assigned to a request, by name"""
        async with self.db_util.session() as session:
            result = await session.execute(
                select(User)
                .where(User.role == UserRole.Approver)
                .order_by(User.full_name, User.user_name)
            )
            return list(result.scalars().all())
