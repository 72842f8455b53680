"""Models package."""

from .member import Member
from .membership_plan import MembershipPlan
from .branch_settings import BranchSettings
from .membership import Membership
from .freeze_history import MembershipFreezeHistory
from .approval_request import ApprovalRequest
from .invoice import Invoice, InvoiceItem
from .payment import Payment
