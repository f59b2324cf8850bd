from datetime import datetime
from sqlalchemy import (CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer,
                        Numeric, String, Text, UniqueConstraint)
from sqlalchemy.orm import declarative_base, relationship
from inventory_portal.constants import Decision, RequestStatus, RequestType, UserRole

Base = declarative_base()


def _str_enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=20,
                values_callable=lambda members: [m.value for m in members])


class Category(Base):
    __tablename__ = 'category'

    category_id = Column(Integer, primary_key=True)
    category_name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, onupdate=datetime.utcnow)

    items = relationship("Item", back_populates="category")


class Item(Base):
    __tablename__ = 'items'
    __table_args__ = (
        CheckConstraint('quantity >= 0', name='ck_items_quantity_non_negative'),
        CheckConstraint('low_stock_threshold >= 0', name='ck_items_threshold_non_negative'),
    )

    item_id = Column(Integer, primary_key=True)
    item_name = Column(String(255), nullable=False, unique=True)
    category_id = Column(Integer, ForeignKey('category.category_id', ondelete='SET NULL'),
                         nullable=True, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    description = Column(Text)
    vendor_name = Column(String(255))
    unit_price = Column(Numeric(10, 2))
    update_reasons = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, onupdate=datetime.utcnow)

    category = relationship("Category", back_populates="items", lazy="selectin")
    issuances = relationship("IssuanceRecord", back_populates="item")

    @property
    def is_low(self) -> bool:
        return self.quantity <= self.low_stock_threshold


class User(Base):
    __tablename__ = 'users'

    user_id = Column(Integer, primary_key=True)
    user_name = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255), nullable=False, default='')
    role = Column(_str_enum(UserRole), nullable=False, default=UserRole.Requester, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class IssuanceRecord(Base):
    __tablename__ = 'items_out'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_items_out_quantity_positive'),
    )

    issue_id = Column(Integer, primary_key=True)
    person_name = Column(String(255), nullable=False)
    item_id = Column(Integer, ForeignKey('items.item_id', ondelete='RESTRICT'),
                     nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    issued_by = Column(String(255))
    issued_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    item = relationship("Item", back_populates="issuances")


class Request(Base):
    __tablename__ = 'requests'

    request_id = Column(Integer, primary_key=True)
    created_by = Column(String(255), nullable=False)
    team_leader_name = Column(String(255))
    team_leader_phone = Column(String(50))
    project_name = Column(String(255))
    isp_name = Column(String(255))
    location = Column(Text)
    deployment_type = Column(String(100))
    received_by = Column(String(255))
    reason = Column(Text)
    request_type = Column(_str_enum(RequestType), nullable=False,
                          default=RequestType.MaterialRequest)
    status = Column(_str_enum(RequestStatus), nullable=False,
                    default=RequestStatus.Pending, index=True)
    released_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, onupdate=datetime.utcnow)

    items = relationship("RequestItem", back_populates="request", lazy="selectin",
                         cascade="all, delete-orphan", order_by="RequestItem.request_item_id")
    approvers = relationship("RequestApprover", back_populates="request", lazy="selectin",
                             cascade="all, delete-orphan", order_by="RequestApprover.user_id")
    approvals = relationship("Approval", back_populates="request", lazy="selectin",
                             order_by="Approval.approval_id")


class RequestItem(Base):
    __tablename__ = 'request_items'
    __table_args__ = (
        UniqueConstraint('request_id', 'item_id', name='uq_request_items_request_item'),
        CheckConstraint('quantity_requested > 0', name='ck_request_items_requested_positive'),
        CheckConstraint('quantity_received >= 0', name='ck_request_items_received_non_negative'),
        CheckConstraint('quantity_returned >= 0', name='ck_request_items_returned_non_negative'),
    )

    request_item_id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey('requests.request_id'), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey('items.item_id', ondelete='RESTRICT'),
                     nullable=False, index=True)
    quantity_requested = Column(Integer, nullable=False)
    quantity_received = Column(Integer)
    quantity_returned = Column(Integer)

    request = relationship("Request", back_populates="items")
    item = relationship("Item", lazy="selectin")


class RequestApprover(Base):
    __tablename__ = 'request_approvers'

    request_id = Column(Integer, ForeignKey('requests.request_id'), primary_key=True)
    user_id = Column(Integer, ForeignKey('users.user_id'), primary_key=True)

    request = relationship("Request", back_populates="approvers")
    user = relationship("User", lazy="selectin")


class Approval(Base):
    __tablename__ = 'approvals'

    approval_id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey('requests.request_id'), nullable=False, index=True)
    approver_id = Column(Integer, ForeignKey('users.user_id'), nullable=False)
    approver_name = Column(String(255), nullable=False)
    decision = Column(_str_enum(Decision), nullable=False)
    reason = Column(Text)
    signature = Column(Text)
    decided_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    request = relationship("Request", back_populates="approvals")
