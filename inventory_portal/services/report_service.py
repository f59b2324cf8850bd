"""Read-only views for dashboards, listings and exports.

Nothing here takes a row lock; every method reads committed state through a
plain session and returns frozen projections from ``schemas``.
"""
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Union
import pandas as pd
from sqlalchemy import func, or_, select
from inventory_portal.common.d_logger import Logs
from inventory_portal.config import Config
from inventory_portal.constants import Decision, RequestStatus, UserRole
from inventory_portal.db.db_utils import DbUtil
from inventory_portal.db.models import (Category, IssuanceRecord, Item, Request,
                                        RequestApprover)
from inventory_portal.ds_exceptions import InvalidInputError, NonExistentRequestIdError
from inventory_portal.schemas import (ApprovalView, DashboardStats, IssuanceView, ItemsOutQuery,
                                      ItemView, RequesterInfo, RequestDetails, RequestLineView,
                                      RequestSummary, RequestViewer)
from inventory_portal.services.low_stock import is_low

logger = Logs().get_logger("main")

UNKNOWN_CATEGORY = 'Unknown Category'


def _item_view(item: Item) -> ItemView:
    return ItemView(
        item_id=item.item_id,
        item_name=item.item_name,
        category_id=item.category_id,
        category_name=item.category.category_name if item.category else None,
        quantity=item.quantity,
        low_stock_threshold=item.low_stock_threshold,
        is_low=is_low(item),
        description=item.description,
        vendor_name=item.vendor_name,
        unit_price=float(item.unit_price) if item.unit_price is not None else None,
        created_at=item.created_at,
    )


def _reject_reason(request: Request) -> Optional[str]:
    rejections = [a for a in request.approvals if a.decision == Decision.Reject]
    return rejections[-1].reason if rejections else None


def _approver_names(request: Request) -> tuple:
    return tuple(a.user.full_name or a.user.user_name for a in request.approvers)


def _flatten(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return ", ".join(str(_flatten(v)) for v in value)
    if isinstance(value, dict):
        return ", ".join(f"{k}={_flatten(v)}" for k, v in value.items() if v is not None)
    return value


def to_frame(rows: Sequence) -> pd.DataFrame:
    """Tabulate projections, one column per field with enums as their values"""
    records = [{k: _flatten(v) for k, v in asdict(row).items()} for row in rows]
    return pd.DataFrame.from_records(records)


class ReportService:
    REPORTS = ('items', 'items_out', 'low_stock', 'requests')

    def __init__(self, db_util: DbUtil):
        self.db_util = db_util

    async def list_items(self) -> List[ItemView]:
        async with self.db_util.session() as session:
            result = await session.execute(select(Item).order_by(Item.item_name))
            return [_item_view(item) for item in result.scalars().all()]

    async def list_low_stock(self) -> List[ItemView]:
        async with self.db_util.session() as session:
            result = await session.execute(
                select(Item)
                .where(Item.quantity <= Item.low_stock_threshold)
                .order_by(Item.quantity, Item.item_name)
            )
            return [_item_view(item) for item in result.scalars().all()]

    async def list_items_out(self, limit: Optional[int] = None) -> List[IssuanceView]:
        """Issuance history joined with item and category names, newest first"""
        if limit is None:
            limit = Config.MAX_ITEMS_OUT_COUNT
        limit = ItemsOutQuery(limit=limit).limit
        query = (
            select(
                IssuanceRecord,
                Item.item_name,
                func.coalesce(Category.category_name, UNKNOWN_CATEGORY),
            )
            .join(Item, Item.item_id == IssuanceRecord.item_id)
            .outerjoin(Category, Category.category_id == Item.category_id)
            .order_by(IssuanceRecord.issued_at.desc(), IssuanceRecord.issue_id.desc())
            .limit(limit)
        )
        async with self.db_util.session() as session:
            result = await session.execute(query)
            return [
                IssuanceView(
                    issue_id=record.issue_id,
                    person_name=record.person_name,
                    item_id=record.item_id,
                    item_name=item_name,
                    category_name=category_name,
                    quantity=record.quantity,
                    issued_at=record.issued_at,
                    issued_by=record.issued_by,
                )
                for record, item_name, category_name in result.all()
            ]

    async def get_dashboard_stats(self) -> DashboardStats:
        async with self.db_util.session() as session:
            total_items = await session.scalar(select(func.count(Item.item_id)))
            total_categories = await session.scalar(select(func.count(Category.category_id)))
            items_out = await session.scalar(select(func.count(IssuanceRecord.issue_id)))
            low_stock = await session.scalar(
                select(func.count(Item.item_id)).where(Item.quantity <= Item.low_stock_threshold)
            )
            pending = await session.scalar(
                select(func.count(Request.request_id)).where(Request.status == RequestStatus.Pending)
            )
        return DashboardStats(
            total_items=total_items or 0,
            total_categories=total_categories or 0,
            items_out=items_out or 0,
            low_stock_items=low_stock or 0,
            pending_requests=pending or 0,
        )

    async def list_requests(self, viewer_id: Optional[int] = None,
                            viewer_role=None) -> List[RequestSummary]:
        """Requests newest first.

        An approver only sees pending requests assigned to them, but every
        request that has already been decided.
        """
        viewer = RequestViewer(viewer_id=viewer_id, viewer_role=viewer_role)

        query = select(Request).order_by(Request.created_at.desc(), Request.request_id.desc())
        if viewer.viewer_role == UserRole.Approver:
            query = query.where(or_(
                Request.status != RequestStatus.Pending,
                Request.approvers.any(RequestApprover.user_id == viewer.viewer_id),
            ))

        async with self.db_util.session() as session:
            result = await session.execute(query)
            return [
                RequestSummary(
                    request_id=request.request_id,
                    created_by=request.created_by,
                    project_name=request.project_name,
                    location=request.location,
                    request_type=request.request_type,
                    status=request.status,
                    item_count=len(request.items),
                    approver_names=_approver_names(request),
                    reject_reason=_reject_reason(request),
                    released_by=request.released_by,
                    created_at=request.created_at,
                )
                for request in result.scalars().all()
            ]

    async def get_request_details(self, request_id: int) -> RequestDetails:
        async with self.db_util.session() as session:
            request = await session.get(Request, request_id)
            if request is None:
                raise NonExistentRequestIdError(f"Request {request_id} not found")

            return RequestDetails(
                request_id=request.request_id,
                created_by=request.created_by,
                request_type=request.request_type,
                status=request.status,
                released_by=request.released_by,
                created_at=request.created_at,
                updated_at=request.updated_at,
                requester=RequesterInfo(
                    created_by=request.created_by,
                    team_leader_name=request.team_leader_name,
                    team_leader_phone=request.team_leader_phone,
                    project_name=request.project_name,
                    isp_name=request.isp_name,
                    location=request.location,
                    deployment_type=request.deployment_type,
                    received_by=request.received_by,
                    reason=request.reason,
                ),
                items=[
                    RequestLineView(
                        request_item_id=line.request_item_id,
                        item_id=line.item_id,
                        item_name=line.item.item_name,
                        current_stock=line.item.quantity,
                        quantity_requested=line.quantity_requested,
                        quantity_received=line.quantity_received,
                        quantity_returned=line.quantity_returned,
                    )
                    for line in request.items
                ],
                approvals=[
                    ApprovalView(
                        approval_id=approval.approval_id,
                        approver_id=approval.approver_id,
                        approver_name=approval.approver_name,
                        decision=approval.decision,
                        reason=approval.reason,
                        signature=approval.signature,
                        decided_at=approval.decided_at,
                    )
                    for approval in request.approvals
                ],
                approver_ids=tuple(a.user_id for a in request.approvers),
                approver_names=_approver_names(request),
            )

    async def export_csv(self, report: Union[str, Sequence], path) -> Path:
        """Write a named report (or rows already fetched) to a CSV file"""
        if isinstance(report, str):
            if report not in self.REPORTS:
                raise InvalidInputError(
                    f"Unknown report {report!r}; expected one of {', '.join(self.REPORTS)}"
                )
            rows = await getattr(self, f"list_{report}")()
        else:
            rows = report
        path = Path(path)
        to_frame(rows).to_csv(path, index=False)
        logger.info(f"Exported {len(rows)} rows to {path}")
        return path
