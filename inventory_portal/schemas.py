"""Typed inputs and read projections for the inventory services.

Inputs are pydantic models checked when they are built, before a service
takes any lock; a failed check surfaces as ``InvalidInputError``. Read
projections are plain frozen dataclasses built from ORM rows, so callers
never hold live ORM objects for joined views.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Optional, Tuple
from pydantic import (BaseModel, ConfigDict, Field, StrictBool, StrictInt, StringConstraints,
                      ValidationError, field_validator, model_validator)
from inventory_portal.constants import (MAX_QUANTITY, Decision, RequestStatus, RequestType,
                                        UserRole)
from inventory_portal.ds_exceptions import InvalidInputError

RowId = Annotated[StrictInt, Field(ge=1, le=MAX_QUANTITY)]
Quantity = Annotated[StrictInt, Field(ge=0, le=MAX_QUANTITY)]
PositiveQuantity = Annotated[StrictInt, Field(gt=0, le=MAX_QUANTITY)]
Delta = Annotated[StrictInt, Field(ge=-MAX_QUANTITY, le=MAX_QUANTITY)]
Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Price = Annotated[Decimal, Field(ge=0, max_digits=10, decimal_places=2)]


def describe_errors(error: ValidationError) -> str:
    parts = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail['loc'])
        parts.append(f"{location}: {detail['msg']}" if location else detail['msg'])
    return "; ".join(parts)


class InputModel(BaseModel):
    """Base for service inputs; invalid data raises InvalidInputError"""

    model_config = ConfigDict(frozen=True, extra='forbid')

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise InvalidInputError(describe_errors(e)) from None


# Requests

class RequesterInfo(InputModel):
    created_by: Text
    team_leader_name: Optional[str] = None
    team_leader_phone: Optional[str] = None
    project_name: Optional[str] = None
    isp_name: Optional[str] = None
    location: Optional[str] = None
    deployment_type: Optional[str] = None
    received_by: Optional[str] = None
    reason: Optional[str] = None

    def to_columns(self) -> dict:
        columns = self.model_dump()
        # return forms omit a team leader; the creator stands in
        columns['team_leader_name'] = self.team_leader_name or self.created_by
        return columns


class RequestLine(InputModel):
    quantity_requested: PositiveQuantity
    item_id: Optional[RowId] = None
    item_name: Optional[str] = None

    @field_validator('item_name')
    @classmethod
    def _blank_name_is_missing(cls, value):
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode='after')
    def _names_an_item(self):
        if self.item_id is None and self.item_name is None:
            raise ValueError("each request line needs an item_id or an item_name")
        return self


class ApproverSelection(InputModel):
    approver_ids: Tuple[RowId, ...] = ()
    all_approvers: StrictBool = False

    @classmethod
    def explicit(cls, *approver_ids: int) -> "ApproverSelection":
        return cls(approver_ids=tuple(approver_ids))

    @classmethod
    def everyone(cls) -> "ApproverSelection":
        return cls(all_approvers=True)

    @model_validator(mode='after')
    def _selects_someone(self):
        if not self.all_approvers and not self.approver_ids:
            raise ValueError("at least one approver must be selected")
        return self


class RequestDraft(InputModel):
    requester: RequesterInfo
    lines: List[RequestLine] = Field(min_length=1)
    approvers: ApproverSelection
    request_type: RequestType = RequestType.MaterialRequest


class RequestUpdate(InputModel):
    request_id: RowId
    requester: RequesterInfo
    lines: List[RequestLine] = Field(min_length=1)


class DecisionInput(InputModel):
    request_id: RowId
    approver_id: RowId
    decision: Decision
    reason: Optional[str] = None
    signature: Optional[str] = None

    @model_validator(mode='after')
    def _rejection_has_reason(self):
        if self.decision == Decision.Reject and not (self.reason and self.reason.strip()):
            raise ValueError("a rejection needs a reason")
        return self


class FulfilledLine(InputModel):
    item_id: RowId
    quantity_received: Optional[Quantity] = None
    quantity_returned: Optional[Quantity] = None

    @model_validator(mode='after')
    def _has_a_quantity(self):
        if self.quantity_received is None and self.quantity_returned is None:
            raise ValueError("a fulfilled line needs quantity_received or quantity_returned")
        return self

    def moved_quantity(self, request_type: RequestType) -> int:
        """quantity_returned for an item return, quantity_received otherwise"""
        if request_type == RequestType.ItemReturn:
            moved, name = self.quantity_returned, 'quantity_returned'
        else:
            moved, name = self.quantity_received, 'quantity_received'
        if moved is None:
            raise InvalidInputError(
                f"Item {self.item_id}: {name} is required to finalize a {request_type.value}"
            )
        return moved


class FinalizeInput(InputModel):
    request_id: RowId
    lines: List[FulfilledLine] = Field(min_length=1)
    released_by: Text

    @model_validator(mode='after')
    def _each_item_once(self):
        item_ids = [line.item_id for line in self.lines]
        if len(set(item_ids)) != len(item_ids):
            raise ValueError("each item may appear only once when finalizing")
        return self


class RequestViewer(InputModel):
    viewer_id: Optional[RowId] = None
    viewer_role: Optional[UserRole] = None

    @model_validator(mode='after')
    def _approver_is_identified(self):
        if self.viewer_role == UserRole.Approver and self.viewer_id is None:
            raise ValueError("viewer_id is required for an approver view")
        return self


# Stock

class IssueInput(InputModel):
    person_name: Text
    item_id: RowId
    quantity: PositiveQuantity
    issued_by: Optional[str] = None


class StockAdjustment(InputModel):
    item_id: RowId
    delta: Delta


class ItemsOutQuery(InputModel):
    limit: Annotated[StrictInt, Field(ge=1, le=MAX_QUANTITY)]


# Catalog

class PricedInput(InputModel):
    @field_validator('unit_price', mode='before', check_fields=False)
    @classmethod
    def _blank_price_is_missing(cls, value):
        return None if value == '' else value


class ItemDraft(PricedInput):
    item_name: Text
    quantity: Quantity = 0
    low_stock_threshold: Quantity
    category_id: Optional[RowId] = None
    description: Optional[str] = None
    vendor_name: Optional[str] = None
    unit_price: Optional[Price] = None


class ItemUpdate(PricedInput):
    update_reason: Text
    quantity: Optional[Quantity] = None
    item_name: Optional[Text] = None
    category_id: Optional[RowId] = None
    low_stock_threshold: Optional[Quantity] = None
    description: Optional[str] = None
    vendor_name: Optional[str] = None
    unit_price: Optional[Price] = None

    @model_validator(mode='after')
    def _required_columns_stay_set(self):
        for name in ('item_name', 'low_stock_threshold'):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    def changes(self) -> dict:
        """Catalog columns the caller passed, excluding the stock count"""
        return self.model_dump(exclude_unset=True, exclude={'update_reason', 'quantity'})


class CategoryDraft(InputModel):
    category_name: Text
    description: Optional[str] = None


class CategoryUpdate(InputModel):
    category_id: RowId
    category_name: Optional[Text] = None
    description: Optional[str] = None


# Users

class UserDraft(InputModel):
    user_name: Text
    full_name: str = ''
    role: UserRole = UserRole.Requester

    @field_validator('full_name', mode='before')
    @classmethod
    def _strip_full_name(cls, value):
        return (value or '').strip()


class UserUpdate(InputModel):
    user_id: RowId
    full_name: Optional[str] = None
    role: Optional[UserRole] = None


# Notifications

@dataclass(frozen=True)
class LowStockAlert:
    item_id: int
    item_name: str
    quantity: int
    threshold: int
    category_name: Optional[str] = None

    @classmethod
    def from_item(cls, item) -> "LowStockAlert":
        return cls(
            item_id=item.item_id,
            item_name=item.item_name,
            quantity=item.quantity,
            threshold=item.low_stock_threshold,
            category_name=item.category.category_name if item.category else None,
        )


# Read projections

@dataclass(frozen=True)
class ItemView:
    item_id: int
    item_name: str
    category_id: Optional[int]
    category_name: Optional[str]
    quantity: int
    low_stock_threshold: int
    is_low: bool
    description: Optional[str] = None
    vendor_name: Optional[str] = None
    unit_price: Optional[float] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CategoryView:
    category_id: int
    category_name: str
    description: Optional[str]
    item_count: int


@dataclass(frozen=True)
class IssuanceView:
    issue_id: int
    person_name: str
    item_id: int
    item_name: str
    category_name: str
    quantity: int
    issued_at: datetime
    issued_by: Optional[str] = None


@dataclass(frozen=True)
class DashboardStats:
    total_items: int
    total_categories: int
    items_out: int
    low_stock_items: int
    pending_requests: int


@dataclass(frozen=True)
class RequestSummary:
    request_id: int
    created_by: str
    project_name: Optional[str]
    location: Optional[str]
    request_type: RequestType
    status: RequestStatus
    item_count: int
    approver_names: Tuple[str, ...]
    reject_reason: Optional[str]
    released_by: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class RequestLineView:
    request_item_id: int
    item_id: int
    item_name: str
    current_stock: int
    quantity_requested: int
    quantity_received: Optional[int]
    quantity_returned: Optional[int]


@dataclass(frozen=True)
class ApprovalView:
    approval_id: int
    approver_id: int
    approver_name: str
    decision: Decision
    reason: Optional[str]
    signature: Optional[str]
    decided_at: datetime


@dataclass(frozen=True)
class RequestDetails:
    request_id: int
    created_by: str
    request_type: RequestType
    status: RequestStatus
    released_by: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    requester: RequesterInfo
    items: List[RequestLineView] = field(default_factory=list)
    approvals: List[ApprovalView] = field(default_factory=list)
    approver_ids: Tuple[int, ...] = ()
    approver_names: Tuple[str, ...] = ()
