from enum import Enum

# Integer columns are 32-bit on PostgreSQL
MAX_QUANTITY = 2 ** 31 - 1


class RequestStatus(str, Enum):
    Pending = 'pending'
    Approved = 'approved'
    Completed = 'completed'
    Rejected = 'rejected'


class RequestType(str, Enum):
    MaterialRequest = 'material_request'
    ItemReturn = 'item_return'


class Decision(str, Enum):
    Approve = 'approve'
    Reject = 'reject'


class UserRole(str, Enum):
    Requester = 'requester'
    Approver = 'approver'
    Issuer = 'issuer'
    SuperAdmin = 'superadmin'


class ApprovalPolicy(str, Enum):
    # first recorded decision settles the request
    Any = 'any'
    # every assigned approver must approve; one reject settles it
    All = 'all'
