"""Material request and item return workflow.

pending -> approved -> completed, or pending -> rejected. Stock only moves at
finalize: a material request decrements each fulfilled line, an item return
adds the returned quantity back.
"""
from typing import Iterable, List, Optional, Sequence, Set, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from inventory_portal.common.d_logger import Logs
from inventory_portal.config import Config
from inventory_portal.constants import (ApprovalPolicy, Decision, RequestStatus,
                                        RequestType, UserRole)
from inventory_portal.db.db_utils import DbUtil, request_key
from inventory_portal.db.models import (Approval, Item, Request, RequestApprover,
                                        RequestItem, User)
from inventory_portal.ds_exceptions import (ForbiddenError, InsufficientStockError,
                                            InvalidInputError, InvalidStateError,
                                            NonExistentRequestIdError)
from inventory_portal.schemas import (ApproverSelection, DecisionInput, FinalizeInput,
                                      FulfilledLine, RequestDraft, RequesterInfo, RequestLine,
                                      RequestUpdate)
from inventory_portal.services.low_stock import LowStockSignal, is_low
from inventory_portal.services.stock_store import StockStore

audit_logger = Logs().get_logger("audit")


def derive_status(policy: ApprovalPolicy, assigned_ids: Iterable[int],
                  approvals: Iterable[Approval]) -> RequestStatus:
    """Fold the approval log of a pending request into its next status"""
    approved: Set[int] = set()
    for approval in approvals:
        if approval.decision == Decision.Reject:
            return RequestStatus.Rejected
        approved.add(approval.approver_id)

    if policy == ApprovalPolicy.Any:
        return RequestStatus.Approved if approved else RequestStatus.Pending
    assigned = set(assigned_ids)
    if assigned and assigned <= approved:
        return RequestStatus.Approved
    return RequestStatus.Pending


class RequestService:
    def __init__(self, db_util: DbUtil, stock_store: StockStore, signal: LowStockSignal,
                 approval_policy: Optional[str] = None):
        self.db_util = db_util
        self.stock_store = stock_store
        self.signal = signal
        try:
            self.policy = ApprovalPolicy(approval_policy or Config.APPROVAL_POLICY)
        except ValueError:
            raise InvalidInputError(f"Unknown approval policy: {approval_policy!r}") from None

    # Loading helpers

    async def _get_request(self, session: AsyncSession, request_id: int,
                           lock: bool = False) -> Request:
        query = (
            select(Request)
            .where(Request.request_id == request_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        request = await session.scalar(query)
        if request is None:
            raise NonExistentRequestIdError(f"Request {request_id} not found")
        return request

    async def _resolve_lines(self, session: AsyncSession,
                             lines: Sequence[RequestLine]) -> List[Tuple[Item, RequestLine]]:
        resolved = []
        seen = set()
        for line in lines:
            if line.item_id is not None:
                item = await session.get(Item, line.item_id)
                label = f"id {line.item_id}"
            else:
                item = await session.scalar(
                    select(Item).where(Item.item_name == line.item_name)
                )
                label = line.item_name
            if item is None:
                raise InvalidInputError(f"Item not found: {label}")
            if item.item_id in seen:
                raise InvalidInputError(f"Item '{item.item_name}' appears more than once")
            seen.add(item.item_id)
            resolved.append((item, line))
        return resolved

    async def _resolve_approvers(self, session: AsyncSession,
                                 selection: ApproverSelection) -> List[User]:
        if selection.all_approvers:
            result = await session.execute(
                select(User).where(User.role == UserRole.Approver).order_by(User.user_id)
            )
            users = list(result.scalars().all())
            if not users:
                raise InvalidInputError("There are no approvers to assign")
            return users

        wanted = list(dict.fromkeys(selection.approver_ids))
        result = await session.execute(select(User).where(User.user_id.in_(wanted)))
        users = {user.user_id: user for user in result.scalars().all()}
        for approver_id in wanted:
            user = users.get(approver_id)
            if user is None:
                raise InvalidInputError(f"Approver {approver_id} does not exist")
            if user.role != UserRole.Approver:
                raise InvalidInputError(f"User '{user.user_name}' is not an approver")
        return [users[approver_id] for approver_id in wanted]

    # Reads

    async def get_request(self, request_id: int) -> Request:
        async with self.db_util.session() as session:
            return await self._get_request(session, request_id)

    # Transitions

    async def create_request(self, requester: RequesterInfo, lines: Sequence[RequestLine],
                             approvers: ApproverSelection,
                             request_type=RequestType.MaterialRequest) -> Request:
        """Persist a pending request with its lines and approver assignment.

        Nothing is taken from stock here; quantities move at finalize.
        """
        draft = RequestDraft(requester=requester, lines=list(lines), approvers=approvers,
                             request_type=request_type)

        async with self.db_util.session() as session:
            line_items = await self._resolve_lines(session, draft.lines)
            approver_users = await self._resolve_approvers(session, draft.approvers)

            request = Request(**draft.requester.to_columns(),
                              request_type=draft.request_type,
                              status=RequestStatus.Pending)
            request.items = [
                RequestItem(item_id=item.item_id, quantity_requested=line.quantity_requested)
                for item, line in line_items
            ]
            request.approvers = [RequestApprover(user_id=user.user_id) for user in approver_users]
            session.add(request)
            await session.flush()
            request = await self._get_request(session, request.request_id)

        audit_logger.info(
            f"create_request actor={draft.requester.created_by} request_id={request.request_id} "
            f"type={draft.request_type.value} approvers={[u.user_id for u in approver_users]}"
        )
        self.signal.publish_status(request.request_id, request.status)
        return request

    async def update_request(self, request_id: int, requester: RequesterInfo,
                             lines: Sequence[RequestLine]) -> Request:
        """Replace the details and lines of a request that is still pending"""
        update = RequestUpdate(request_id=request_id, requester=requester, lines=list(lines))

        async with self.db_util.unit([request_key(update.request_id)]) as session:
            request = await self._get_request(session, update.request_id, lock=True)
            if request.status != RequestStatus.Pending:
                raise InvalidStateError(
                    f"Request {request_id} is {request.status.value}; only pending requests can be edited"
                )
            line_items = await self._resolve_lines(session, update.lines)

            columns = update.requester.to_columns()
            columns.pop('created_by')
            for column, value in columns.items():
                setattr(request, column, value)

            # rows for items that stay are updated in place; the unique
            # (request_id, item_id) key forbids delete-and-reinsert in one flush
            existing = {request_item.item_id: request_item for request_item in request.items}
            kept = []
            for item, line in line_items:
                request_item = existing.pop(item.item_id, None)
                if request_item is None:
                    request_item = RequestItem(item_id=item.item_id)
                request_item.quantity_requested = line.quantity_requested
                kept.append(request_item)
            request.items = kept
            await session.flush()
            request = await self._get_request(session, request_id)

        audit_logger.info(f"update_request actor={update.requester.created_by} request_id={request_id}")
        return request

    async def approve(self, request_id: int, approver_id: int,
                      signature: Optional[str] = None) -> Request:
        return await self._decide(DecisionInput(request_id=request_id, approver_id=approver_id,
                                                decision=Decision.Approve, signature=signature))

    async def reject(self, request_id: int, approver_id: int, reason: str) -> Request:
        return await self._decide(DecisionInput(request_id=request_id, approver_id=approver_id,
                                                decision=Decision.Reject, reason=reason))

    async def _decide(self, decision: DecisionInput) -> Request:
        request_id, approver_id = decision.request_id, decision.approver_id

        async with self.db_util.unit([request_key(request_id)]) as session:
            request = await self._get_request(session, request_id, lock=True)
            if request.status != RequestStatus.Pending:
                raise InvalidStateError(
                    f"Request {request_id} is {request.status.value}; "
                    f"only pending requests can be {decision.decision.value}d"
                )
            assigned = [assignment.user_id for assignment in request.approvers]
            if approver_id not in assigned:
                raise ForbiddenError(
                    f"User {approver_id} is not an assigned approver of request {request_id}"
                )
            approver = await session.get(User, approver_id)
            if approver.role != UserRole.Approver:
                raise ForbiddenError(f"User {approver_id} no longer holds the approver role")
            if any(approval.approver_id == approver_id for approval in request.approvals):
                raise InvalidStateError(
                    f"User {approver_id} has already decided on request {request_id}"
                )

            request.approvals.append(Approval(
                approver_id=approver_id,
                approver_name=approver.full_name or approver.user_name,
                decision=decision.decision,
                reason=decision.reason.strip() if decision.reason else None,
                signature=decision.signature,
            ))
            request.status = derive_status(self.policy, assigned, request.approvals)
            await session.flush()
            request = await self._get_request(session, request_id)

        audit_logger.info(
            f"{decision.decision.value}_request actor={approver_id} request_id={request_id} "
            f"status={request.status.value}"
        )
        if request.status != RequestStatus.Pending:
            self.signal.publish_status(request_id, request.status)
        return request

    async def finalize(self, request_id: int, lines: Sequence[FulfilledLine],
                       released_by: str) -> Request:
        """Move stock for an approved request and complete it.

        Material requests decrement each fulfilled line under its row lock and
        fail as a whole if any line exceeds what is on hand; item returns add
        the returned quantities back. Lines of the request that are not
        mentioned are recorded as zero. Item rows are locked in ascending id
        order whatever order the lines arrive in.
        """
        order = FinalizeInput(request_id=request_id, lines=list(lines), released_by=released_by)
        lines = sorted(order.lines, key=lambda line: line.item_id)
        item_ids = [line.item_id for line in lines]

        lock_keys = [request_key(order.request_id)] + self.stock_store.lock_keys(item_ids)
        async with self.db_util.unit(lock_keys) as session:
            request = await self._get_request(session, order.request_id, lock=True)
            if request.status != RequestStatus.Approved:
                raise InvalidStateError(
                    f"Request {request_id} is {request.status.value}; only approved requests can be finalized"
                )
            request_type = request.request_type
            by_item = {request_item.item_id: request_item for request_item in request.items}

            moves = []
            for line in lines:
                request_item = by_item.pop(line.item_id, None)
                if request_item is None:
                    raise InvalidInputError(
                        f"Item {line.item_id} is not part of request {request_id}"
                    )
                moved = line.moved_quantity(request_type)
                if moved > request_item.quantity_requested:
                    raise InvalidInputError(
                        f"Item {line.item_id}: {moved} exceeds the {request_item.quantity_requested} requested"
                    )
                moves.append((line, request_item, moved))

            items = await self.stock_store.lock_items(session, item_ids)
            touched = []
            for line, request_item, moved in moves:
                item = items[line.item_id]
                if request_type == RequestType.ItemReturn:
                    if moved:
                        item = await self.stock_store.adjust_quantity(session, line.item_id, moved)
                    request_item.quantity_returned = moved
                    request_item.quantity_received = line.quantity_received
                else:
                    if moved > item.quantity:
                        raise InsufficientStockError(item.item_id, item.item_name,
                                                     available=item.quantity, requested=moved)
                    if moved:
                        item = await self.stock_store.adjust_quantity(session, line.item_id, -moved)
                    request_item.quantity_received = moved
                    request_item.quantity_returned = line.quantity_returned
                touched.append(item)

            for request_item in by_item.values():
                if request_type == RequestType.ItemReturn:
                    request_item.quantity_returned = 0
                else:
                    request_item.quantity_received = 0

            request.status = RequestStatus.Completed
            request.released_by = order.released_by
            await session.flush()

            alerts = []
            if any(is_low(item) for item in touched):
                alerts = self.signal.evaluate(await self.stock_store.low_stock_items(session))
            request = await self._get_request(session, order.request_id)

        audit_logger.info(
            f"finalize_request actor={order.released_by} request_id={request_id} "
            f"type={request_type.value} lines={len(lines)}"
        )
        self.signal.publish(alerts)
        self.signal.publish_status(request_id, request.status)
        return request
