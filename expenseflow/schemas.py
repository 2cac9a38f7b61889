"""
Pydantic schemas for ExpenseFlow.
Defines data validation and serialization models for API requests/responses.
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, EmailStr, ConfigDict, field_validator, model_validator


# Enums
class UserRole(str, Enum):
    """User role enumeration."""
    admin = "admin"
    manager = "manager"
    employee = "employee"


class ExpenseStatus(str, Enum):
    """Expense status enumeration."""
    draft = "draft"
    submitted = "submitted"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    paid = "paid"


class ExpenseCategory(str, Enum):
    """Fixed expense category enumeration."""
    travel = "Travel"
    meals = "Meals"
    accommodation = "Accommodation"
    transportation = "Transportation"
    office_supplies = "Office Supplies"
    software = "Software"
    training = "Training"
    marketing = "Marketing"
    entertainment = "Entertainment"
    healthcare = "Healthcare"
    other = "Other"


class PaymentMethod(str, Enum):
    """Payment method enumeration."""
    cash = "Cash"
    credit_card = "Credit Card"
    debit_card = "Debit Card"
    bank_transfer = "Bank Transfer"
    other = "Other"


class ReimbursementMethod(str, Enum):
    """Reimbursement method enumeration."""
    bank_transfer = "Bank Transfer"
    check = "Check"
    cash = "Cash"
    payroll = "Payroll"


class RecurringFrequency(str, Enum):
    """Recurring expense frequency."""
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class ApproverType(str, Enum):
    """How a workflow step selects its approver."""
    manager = "manager"
    specific_user = "specific_user"
    role_based = "role_based"
    department_head = "department_head"
    any_from_group = "any_from_group"


# Steps of these types accept a decision from any member of the approver group.
GROUP_APPROVER_TYPES = frozenset({ApproverType.role_based, ApproverType.any_from_group})


class StepStatus(str, Enum):
    """Approval step status enumeration."""
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    skipped = "skipped"


class ApprovalFlowType(str, Enum):
    """Approval flow type stored on a rule."""
    sequential = "sequential"
    parallel = "parallel"
    conditional = "conditional"


class Decision(str, Enum):
    """Decision an approver can record on a step."""
    approve = "approve"
    reject = "reject"


class AuditAction(str, Enum):
    """Audit action enumeration."""
    create = "create"
    update = "update"
    delete = "delete"
    submit = "submit"
    approve = "approve"
    reject = "reject"
    skip = "skip"
    escalate = "escalate"
    pay = "pay"
    comment = "comment"
    login = "login"


TERMINAL_EXPENSE_STATUSES = frozenset({
    ExpenseStatus.approved, ExpenseStatus.rejected, ExpenseStatus.paid
})


# Base schemas
class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        arbitrary_types_allowed=True
    )


class TimestampMixin(BaseModel):
    """Mixin for timestamp fields."""
    created_at: datetime
    updated_at: datetime


# Company schemas
class Company(BaseSchema, TimestampMixin):
    """Complete company schema."""
    id: UUID
    name: str
    country: str
    default_currency: str
    is_active: bool


class CompanyRegister(BaseSchema):
    """Schema for registering a company together with its first admin."""
    company_name: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=1, max_length=100)
    default_currency: str = Field(default="USD", min_length=3, max_length=3)
    admin_first_name: str = Field(..., min_length=1, max_length=100)
    admin_last_name: str = Field(..., min_length=1, max_length=100)
    admin_email: EmailStr
    password: str = Field(..., min_length=8)

    @field_validator("default_currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()


# User schemas
class UserBase(BaseSchema):
    """Base user schema."""
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.employee
    department: Optional[str] = Field(None, max_length=100)
    employee_code: Optional[str] = Field(None, max_length=50)


class UserCreate(UserBase):
    """Schema for an admin registering an employee or manager."""
    password: str = Field(..., min_length=8)
    manager_id: Optional[UUID] = None
    approval_limit: Decimal = Field(default=Decimal("0"), ge=0)


class UserUpdate(BaseSchema):
    """Schema for an admin changing a user. An explicit null manager_id clears the manager."""
    role: Optional[UserRole] = None
    manager_id: Optional[UUID] = None
    is_active: Optional[bool] = None
    department: Optional[str] = Field(None, max_length=100)
    employee_code: Optional[str] = Field(None, max_length=50)
    approval_limit: Optional[Decimal] = Field(None, ge=0)


class User(UserBase, TimestampMixin):
    """Complete user schema."""
    id: UUID
    company_id: UUID
    manager_id: Optional[UUID]
    approval_limit: Decimal
    is_active: bool
    last_login: Optional[datetime]


# Authentication schemas
class LoginRequest(BaseSchema):
    """Schema for user login."""
    email: EmailStr
    password: str


class RefreshRequest(BaseSchema):
    """Schema for refreshing an access token."""
    refresh_token: str


class Token(BaseSchema):
    """Schema for authentication tokens."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RegistrationResponse(BaseSchema):
    """Response returned after company registration."""
    token: Token
    user: User
    company: Company


# Approval rule schemas
class StepTemplateBase(BaseSchema):
    """Configured approval step of a rule."""
    name: str = Field(..., min_length=1, max_length=100)
    approver_type: ApproverType
    approvers: List[UUID] = Field(default_factory=list)
    required_role: Optional[UserRole] = None
    is_optional: bool = False
    timeout_hours: int = Field(default=72, ge=1)
    escalate_to: Optional[UUID] = None


class StepTemplate(StepTemplateBase):
    """Step template as stored."""
    position: int


class RuleConditions(BaseSchema):
    """Matching conditions of a rule."""
    amount_min: Decimal = Field(default=Decimal("0"), ge=0)
    amount_max: Optional[Decimal] = Field(default=None, ge=0)
    categories: List[ExpenseCategory] = Field(default_factory=list)
    employee_roles: List[UserRole] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_range(self):
        if self.amount_max is not None and self.amount_max < self.amount_min:
            raise ValueError("amount_max must be greater than or equal to amount_min")
        return self


class AutoApprovalRules(BaseSchema):
    """Auto-approval settings of a rule."""
    enabled: bool = False
    max_amount: Decimal = Field(default=Decimal("0"), ge=0)
    categories: List[ExpenseCategory] = Field(default_factory=list)
    trusted_employees: List[UUID] = Field(default_factory=list)
    recurring_only: bool = False


class ApprovalFlowCreate(BaseSchema):
    """Approval flow settings of a rule."""
    type: ApprovalFlowType = ApprovalFlowType.sequential
    require_manager_approval: bool = True
    steps: List[StepTemplateBase] = Field(default_factory=list)
    conditional_rules: Dict[str, Any] = Field(default_factory=dict)


class ApprovalFlow(ApprovalFlowCreate):
    """Approval flow as stored."""
    steps: List[StepTemplate] = Field(default_factory=list)


class ApprovalRuleCreate(BaseSchema):
    """Schema for creating an approval rule."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_active: bool = True
    priority: int = 1
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    auto_approval_rules: AutoApprovalRules = Field(default_factory=AutoApprovalRules)
    approval_flow: ApprovalFlowCreate = Field(default_factory=ApprovalFlowCreate)


class ApprovalRuleUpdate(BaseSchema):
    """Schema for updating an approval rule."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    conditions: Optional[RuleConditions] = None
    auto_approval_rules: Optional[AutoApprovalRules] = None
    approval_flow: Optional[ApprovalFlowCreate] = None


class ApprovalRule(BaseSchema, TimestampMixin):
    """Complete approval rule schema."""
    id: UUID
    company_id: UUID
    name: str
    description: Optional[str]
    is_active: bool
    priority: int
    sequence: int
    conditions: RuleConditions
    auto_approval_rules: AutoApprovalRules
    approval_flow: ApprovalFlow


# Expense schemas
class ExpenseBase(BaseSchema):
    """Base expense schema."""
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    category: ExpenseCategory
    description: str = Field(..., min_length=1, max_length=500)
    expense_date: date
    merchant_name: Optional[str] = Field(None, max_length=100)
    payment_method: PaymentMethod = PaymentMethod.credit_card
    receipt_url: Optional[str] = Field(None, max_length=500)
    is_recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("expense_date")
    @classmethod
    def not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("Expense date cannot be in the future")
        return value


class ExpenseSubmit(ExpenseBase):
    """Schema for submitting (or drafting) an expense."""
    pass


class ExpenseUpdate(BaseSchema):
    """Schema for updating a draft expense."""
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    category: Optional[ExpenseCategory] = None
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    expense_date: Optional[date] = None
    merchant_name: Optional[str] = Field(None, max_length=100)
    payment_method: Optional[PaymentMethod] = None
    receipt_url: Optional[str] = Field(None, max_length=500)
    is_recurring: Optional[bool] = None
    recurring_frequency: Optional[RecurringFrequency] = None
    tags: Optional[List[str]] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @field_validator("expense_date")
    @classmethod
    def not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value and value > date.today():
            raise ValueError("Expense date cannot be in the future")
        return value


class ApprovalStep(BaseSchema):
    """Materialized workflow step."""
    step_number: int
    name: Optional[str]
    approver_type: ApproverType
    approver_id: Optional[UUID]
    approver_group: List[UUID]
    is_optional: bool
    status: StepStatus
    comments: Optional[str]
    approved_at: Optional[datetime]
    approved_by: Optional[UUID]
    activated_at: Optional[datetime]
    escalated_at: Optional[datetime]


class ApprovalWorkflow(BaseSchema):
    """Workflow attached to an expense."""
    current_step: int
    total_steps: int
    steps: List[ApprovalStep]


class ExpenseComment(BaseSchema):
    """Entry of the expense comment log."""
    id: UUID
    user_id: UUID
    message: str
    created_at: datetime


class Expense(BaseSchema, TimestampMixin):
    """Complete expense schema."""
    id: UUID
    company_id: UUID
    employee_id: UUID
    amount: Decimal
    currency: str
    converted_amount: Decimal
    exchange_rate: Decimal
    category: ExpenseCategory
    description: str
    expense_date: date
    merchant_name: Optional[str]
    payment_method: PaymentMethod
    receipt_url: Optional[str]
    is_recurring: bool
    recurring_frequency: Optional[RecurringFrequency]
    tags: List[str]
    status: ExpenseStatus
    applied_rule_id: Optional[UUID]
    approval_workflow: ApprovalWorkflow
    comments: List[ExpenseComment]
    submitted_at: Optional[datetime]
    reimbursed_at: Optional[datetime]
    reimbursement_method: Optional[ReimbursementMethod]


# Decision schemas
class DecisionRequest(BaseSchema):
    """Body of an approve/reject/skip request."""
    comments: Optional[str] = Field(None, max_length=1000)
    expected_step: Optional[int] = Field(None, ge=0)


class CommentCreate(BaseSchema):
    """Schema for adding a comment to an expense."""
    message: str = Field(..., min_length=1, max_length=1000)


class PaymentRequest(BaseSchema):
    """Schema for marking an approved expense as paid."""
    reimbursement_method: ReimbursementMethod = ReimbursementMethod.bank_transfer


# Currency schemas
class CurrencyRate(BaseSchema):
    """Static rate of a currency against the USD base."""
    currency: str
    rate: Decimal


# Audit schemas
class AuditEntry(BaseSchema):
    """Audit trail entry of a resource."""
    id: UUID
    user_id: Optional[UUID]
    action: AuditAction
    old_values: Optional[Dict[str, Any]]
    new_values: Optional[Dict[str, Any]]
    created_at: datetime
