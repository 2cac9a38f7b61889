"""
SQLAlchemy models for ExpenseFlow.
Defines all database entities with proper relationships and constraints.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    String, Boolean, DateTime, Date, Text, ForeignKey, Numeric, Integer,
    Enum, JSON, Index, CheckConstraint, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, validates
from sqlalchemy.sql import func

from expenseflow.database import Base
from expenseflow.schemas import (
    UserRole, ExpenseStatus, ExpenseCategory, PaymentMethod, ReimbursementMethod,
    RecurringFrequency, ApproverType, StepStatus, ApprovalFlowType, AuditAction
)
from expenseflow.utils import utcnow


class TimestampMixin:
    """Mixin to add created_at and updated_at timestamps."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class Company(Base, TimestampMixin):
    """Company entity - tenant owning users, rules and expenses."""
    __tablename__ = "companies"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    users: Mapped[List["User"]] = relationship("User", back_populates="company", cascade="all, delete-orphan")
    approval_rules: Mapped[List["ApprovalRule"]] = relationship("ApprovalRule", back_populates="company", cascade="all, delete-orphan")
    expenses: Mapped[List["Expense"]] = relationship("Expense", back_populates="company", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_companies_name", "name"),
    )


class User(Base, TimestampMixin):
    """User entity - employees, managers and admins of a company."""
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False, default=UserRole.employee)
    department: Mapped[Optional[str]] = mapped_column(String(100))
    employee_code: Mapped[Optional[str]] = mapped_column(String(50))
    manager_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    # Stored and reported, never enforced by the approval workflow.
    approval_limit: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    company: Mapped["Company"] = relationship("Company", back_populates="users")
    manager: Mapped[Optional["User"]] = relationship("User", remote_side=[id], back_populates="direct_reports")
    direct_reports: Mapped[List["User"]] = relationship("User", back_populates="manager")

    __table_args__ = (
        Index("idx_users_company_role", "company_id", "role"),
        Index("idx_users_manager", "manager_id"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class ApprovalRule(Base, TimestampMixin):
    """Approval rule entity - conditional routing policy of a company."""
    __tablename__ = "approval_rules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Insertion order within the company; breaks priority ties.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Conditions
    amount_min: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    amount_max: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    categories: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    employee_roles: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Approval flow
    flow_type: Mapped[ApprovalFlowType] = mapped_column(Enum(ApprovalFlowType), default=ApprovalFlowType.sequential)
    require_manager_approval: Mapped[bool] = mapped_column(Boolean, default=True)
    conditional_rules: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Auto-approval
    auto_approval_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_approval_max_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    auto_approval_categories: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    trusted_employees: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    recurring_only: Mapped[bool] = mapped_column(Boolean, default=False)

    created_by: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))

    # Relationships
    company: Mapped["Company"] = relationship("Company", back_populates="approval_rules")
    steps: Mapped[List["ApprovalRuleStep"]] = relationship(
        "ApprovalRuleStep",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="ApprovalRuleStep.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_approval_rules_company_active", "company_id", "is_active"),
        Index("idx_approval_rules_priority", "priority"),
    )

    @property
    def conditions(self) -> Dict[str, Any]:
        return {
            "amount_min": self.amount_min,
            "amount_max": self.amount_max,
            "categories": self.categories,
            "employee_roles": self.employee_roles,
        }

    @property
    def auto_approval_rules(self) -> Dict[str, Any]:
        return {
            "enabled": self.auto_approval_enabled,
            "max_amount": self.auto_approval_max_amount,
            "categories": self.auto_approval_categories,
            "trusted_employees": self.trusted_employees,
            "recurring_only": self.recurring_only,
        }

    @property
    def approval_flow(self) -> Dict[str, Any]:
        return {
            "type": self.flow_type,
            "require_manager_approval": self.require_manager_approval,
            "steps": self.steps,
            "conditional_rules": self.conditional_rules,
        }


class ApprovalRuleStep(Base):
    """Step template configured on an approval rule."""
    __tablename__ = "approval_rule_steps"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    rule_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("approval_rules.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_type: Mapped[ApproverType] = mapped_column(Enum(ApproverType), nullable=False)
    approvers: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    required_role: Mapped[Optional[UserRole]] = mapped_column(Enum(UserRole))
    is_optional: Mapped[bool] = mapped_column(Boolean, default=False)
    timeout_hours: Mapped[int] = mapped_column(Integer, default=72)
    escalate_to: Mapped[Optional[UUID]] = mapped_column(Uuid)

    rule: Mapped["ApprovalRule"] = relationship("ApprovalRule", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("rule_id", "position", name="uq_approval_rule_steps_position"),
    )


class Expense(Base, TimestampMixin):
    """Expense entity - a submission and its approval workflow."""
    __tablename__ = "expenses"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    employee_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False, default=Decimal("1"))
    converted_amount: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(Enum(ExpenseCategory), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(100))
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), default=PaymentMethod.credit_card)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurring_frequency: Mapped[Optional[RecurringFrequency]] = mapped_column(Enum(RecurringFrequency))
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[ExpenseStatus] = mapped_column(Enum(ExpenseStatus), nullable=False, default=ExpenseStatus.draft)

    # Workflow
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    applied_rule_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("approval_rules.id", ondelete="SET NULL"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reimbursed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reimbursement_method: Mapped[Optional[ReimbursementMethod]] = mapped_column(Enum(ReimbursementMethod))

    # Relationships
    company: Mapped["Company"] = relationship("Company", back_populates="expenses")
    employee: Mapped["User"] = relationship("User", foreign_keys=[employee_id])
    steps: Mapped[List["ExpenseApprovalStep"]] = relationship(
        "ExpenseApprovalStep",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="ExpenseApprovalStep.step_number",
        lazy="selectin",
    )
    comments: Mapped[List["ExpenseComment"]] = relationship(
        "ExpenseComment",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="ExpenseComment.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_expenses_employee_status", "employee_id", "status"),
        Index("idx_expenses_company_status", "company_id", "status"),
        Index("idx_expenses_created", "created_at"),
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("current_step >= 0 AND current_step <= total_steps", name="step_in_range"),
    )

    @validates("amount", "exchange_rate")
    def _sync_converted_amount(self, key, value):
        amount = value if key == "amount" else self.amount
        rate = value if key == "exchange_rate" else self.exchange_rate
        if amount is not None and rate is not None:
            self.converted_amount = Decimal(str(amount)) * Decimal(str(rate))
        return value

    @property
    def approval_workflow(self) -> Dict[str, Any]:
        return {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "steps": self.steps,
        }


class ExpenseApprovalStep(Base):
    """Materialized step of an expense's approval workflow."""
    __tablename__ = "expense_approval_steps"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    expense_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100))
    approver_type: Mapped[ApproverType] = mapped_column(Enum(ApproverType), nullable=False)
    approver_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    approver_group: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    is_optional: Mapped[bool] = mapped_column(Boolean, default=False)
    timeout_hours: Mapped[Optional[int]] = mapped_column(Integer)
    escalate_to: Mapped[Optional[UUID]] = mapped_column(Uuid)
    status: Mapped[StepStatus] = mapped_column(Enum(StepStatus), nullable=False, default=StepStatus.pending)
    comments: Mapped[Optional[str]] = mapped_column(Text)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    expense: Mapped["Expense"] = relationship("Expense", back_populates="steps")

    __table_args__ = (
        Index("idx_expense_steps_approver_status", "approver_id", "status"),
        UniqueConstraint("expense_id", "step_number", name="uq_expense_approval_steps_number"),
    )


class ExpenseComment(Base):
    """Comment log entry of an expense, independent of per-step comments."""
    __tablename__ = "expense_comments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    expense_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    expense: Mapped["Expense"] = relationship("Expense", back_populates="comments")


class AuditLog(Base, TimestampMixin):
    """Audit log entity - tracks workflow and administrative actions."""
    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    company_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"))
    user_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    old_values: Mapped[Optional[dict]] = mapped_column(JSON)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON)

    __table_args__ = (
        Index("idx_audit_logs_company_date", "company_id", "created_at"),
        Index("idx_audit_logs_resource", "resource_type", "resource_id"),
    )
