from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Tuple


class Role(str, Enum):
    RESIDENT = "Resident"
    ADMIN = "Admin"
    GUARD = "Guard"
    ACCOUNTANT = "Accountant"
    ACCOUNTS_CHECKER = "AccountsChecker"
    SWEEPER = "Sweeper"
    LIFT_MECHANIC = "LiftMechanic"


# roles whose cash_on_hand counts towards the building's available cash
CASH_HOLDER_ROLES = (Role.ACCOUNTANT, Role.GUARD)


class DuesStatus(str, Enum):
    PAID = "Paid"
    PENDING = "Pending"
    PARTIAL = "Partial"


class PaymentStatus(str, Enum):
    CONFIRMED = "Confirmed"
    PENDING_CONFIRMATION = "Pending Confirmation"
    OBJECTED = "Objected"


class ExpenseStatus(str, Enum):
    PENDING_APPROVAL = "Pending Approval"
    CONFIRMED = "Confirmed"
    PAID = "Paid"
    OBJECTED = "Objected"


class LoanType(str, Enum):
    RECEIVED = "Received"
    PAID_OUT = "PaidOut"


class LoanStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"


class TransferStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"


class NotificationAction(str, Enum):
    PAY_EXPENSE = "PAY_EXPENSE"
    DUE_REMINDER = "DUE_REMINDER"
    PAYABLE_REMINDER = "PAYABLE_REMINDER"
    INFO = "INFO"
    RENT_CONFIRMATION = "RENT_CONFIRMATION"
    CASH_TRANSFER_CONFIRMATION = "CASH_TRANSFER_CONFIRMATION"
    EXPENSE_APPROVAL = "EXPENSE_APPROVAL"
    EXPENSE_REJECTED = "EXPENSE_REJECTED"
    VACATE_REQUEST = "VACATE_REQUEST"
    BILL_UPLOADED = "BILL_UPLOADED"


@dataclass(frozen=True)
class User:
    id: str                              # flat-based id ("101own") or staff id ("admin")
    role: Role
    owner_name: str
    resident_type: str = "Owner"         # "Owner" or "Tenant"
    contact: str = ""
    salary: Optional[int] = None         # staff only
    cash_on_hand: Optional[int] = None   # accountant and guards only
    tenant_name: Optional[str] = None


@dataclass(frozen=True)
class Dues:
    month: str          # YYYY-MM
    amount: int
    status: DuesStatus
    paid_amount: int
    description: str

    @property
    def owed(self) -> int:
        return self.amount - self.paid_amount


@dataclass(frozen=True)
class TenancyPeriod:
    user_id: str
    start_date: str
    end_date: Optional[str] = None


@dataclass(frozen=True)
class Flat:
    id: str
    label: str
    floor: int
    monthly_maintenance: int
    dues: Tuple[Dues, ...] = ()
    advance_balance: int = 0
    is_vacant: bool = False
    vacant_since: Optional[str] = None
    admin_remarks: str = ""
    for_sale: bool = False
    for_rent: bool = False
    tenant_history: Tuple[TenancyPeriod, ...] = ()


@dataclass(frozen=True)
class BreakdownLine:
    description: str
    amount: int


@dataclass(frozen=True)
class Payment:
    kind: ClassVar[str] = "payment"

    id: str
    flat_id: str        # flat id, or a person id for loans received
    amount: int
    date: str           # ISO timestamp
    purpose: str
    status: PaymentStatus = PaymentStatus.CONFIRMED
    remarks: str = ""
    received_by: Optional[str] = None
    confirmed_by: Optional[str] = None
    transfer_status: Optional[TransferStatus] = None
    breakdown: Tuple[BreakdownLine, ...] = ()
    receipt_img: Optional[str] = None   # base64


@dataclass(frozen=True)
class ExpenseDetails:
    previous_units: Optional[int] = None
    current_units: Optional[int] = None


@dataclass(frozen=True)
class Expense:
    kind: ClassVar[str] = "expense"

    id: str
    purpose: str
    amount: int
    date: str
    status: ExpenseStatus
    paid: bool = False
    approved_by: Tuple[str, ...] = ()
    requires_approval: bool = False
    requested_by: Optional[str] = None
    paid_by: Optional[str] = None
    due_date: Optional[str] = None
    amount_after_due_date: Optional[int] = None
    remarks: str = ""
    invoice_img: Optional[str] = None   # base64
    details: Optional[ExpenseDetails] = None


@dataclass(frozen=True)
class RecurringExpense:
    purpose: str
    amount: int


@dataclass(frozen=True)
class Notice:
    id: str
    title: str
    content: str
    date: str
    image: Optional[str] = None


@dataclass(frozen=True)
class Message:
    id: str
    sender: str
    recipient: str
    content: str
    timestamp: str
    is_read: bool = False


@dataclass(frozen=True)
class NotificationPayload:
    payment_id: Optional[str] = None
    expense_id: Optional[str] = None
    tenant_transaction_id: Optional[str] = None
    cash_transfer_id: Optional[str] = None
    amount: Optional[int] = None
    from_user_id: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    id: str
    recipient_id: str
    message: str
    date: str
    is_read: bool = False
    action_type: Optional[NotificationAction] = None
    payload: Optional[NotificationPayload] = None


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    description: str
    related_flat_id: str
    date: str
    due_date: str
    is_completed: bool = False


@dataclass(frozen=True)
class Inquiry:
    id: str
    type: str       # "Rent" or "Purchase"
    property: str
    message: str
    date: str
    is_archived: bool = False


@dataclass(frozen=True)
class TenantTransaction:
    id: str
    user_id: str
    flat_id: str
    category: str
    month: str
    paid_on: str
    amount: Optional[int] = None
    proof_document: Optional[str] = None
    remarks: str = ""
    status: Optional[str] = None
    owner_confirmation_by: Optional[str] = None
    confirmed_on: Optional[str] = None


@dataclass(frozen=True)
class PersonalBudgetEntry:
    id: str
    user_id: str
    type: str       # "Income" or "Expense"
    category: str
    description: str
    amount: int
    date: str


@dataclass(frozen=True)
class Contact:
    id: str
    title: str
    name: str
    contact_number: str


@dataclass(frozen=True)
class DeletedItem:
    item: dict          # JSON form of the deleted record
    type: str
    deleted_at: str


@dataclass(frozen=True)
class Loan:
    kind: ClassVar[str] = "loan"

    id: str
    type: LoanType
    person_id: str
    person_name: str
    amount: int
    due_date: str
    date: str
    status: LoanStatus
    description: str = ""


@dataclass(frozen=True)
class CashTransfer:
    id: str
    from_user_id: str
    to_user_id: str
    amount: int
    date: str
    status: TransferStatus
    confirmed_on: Optional[str] = None


@dataclass(frozen=True)
class BuildingInfo:
    name: str
    address: str
    total_flats: int
    total_penthouses: int
    total_shops: int
    total_offices: int
    mezzanine_details: str
    parking_capacity: int
    total_floors: int
    flats_per_floor: int
    logo: Optional[str] = None  # base64
