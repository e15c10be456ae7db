"""SQLAlchemy models and role-permission mapping."""

from __future__ import annotations

import enum

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Role / Permission mapping
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "super_admin": {"manage_all"},
    "user_admin": {
        "manage_customers",
        "manage_subscriptions",
        "manage_invoices",
        "manage_payments",
        "verify_payments",
        "manage_expenses",
        "view_reports",
    },
    "collector": {"manage_payments", "manage_expenses", "manage_customers"},
    "customer": {"view_own"},
}

VALID_ROLES = list(ROLE_PERMISSIONS.keys())

VALID_BILLING_ANCHORS = ("15th", "30th")
VALID_PAYMENT_MODES = {"Cash", "E-Wallet", "Referral Credit", "Credit", "Online"}
VALID_EXPENSE_REASONS = {"Maintenance", "Materials", "Transportation", "Others"}
VALID_INVOICE_KINDS = {"monthly", "prorated", "activation", "disconnection"}
VALID_LEDGER_KINDS = {"invoice", "payment", "credit", "adjustment"}


class InvoiceStatus(str, enum.Enum):
    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"
    PENDING_VERIFICATION = "Pending Verification"


class PaymentStatus(str, enum.Enum):
    """Verification lifecycle of a payment: Pending -> Approved | Rejected."""

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120))
    role = db.Column(db.String(30), nullable=False, default="collector")
    must_change_password = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    business_unit_id = db.Column(db.Integer, db.ForeignKey("business_unit.id"))
    customer_id = db.Column(db.Integer, db.ForeignKey("customer.id"))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    business_unit = db.relationship("BusinessUnit")
    customer = db.relationship("Customer", foreign_keys=[customer_id])


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class BusinessUnit(db.Model):
    """A service area with its own billing calendar."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    billing_anchor = db.Column(db.String(10), nullable=False, default="15th")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


class Plan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), unique=True, nullable=False)
    monthly_fee = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Customers & subscriptions
# ---------------------------------------------------------------------------

class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    mobile_number = db.Column(db.String(20))
    email = db.Column(db.String(120))
    referrer_id = db.Column(db.Integer, db.ForeignKey("customer.id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    referrer = db.relationship("Customer", remote_side=[id])
    subscriptions = db.relationship("Subscription", back_populates="customer")

    @property
    def is_active(self) -> bool:
        return any(sub.active for sub in self.subscriptions)


class Subscription(db.Model):
    """One customer's connection to one plan at one business unit.

    ``balance`` is signed (positive = owed, negative = credit) and is only
    written through ``services.ledger.post_entry``.
    """
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customer.id"), nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    business_unit_id = db.Column(db.Integer, db.ForeignKey("business_unit.id"), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)
    billing_anchor = db.Column(db.String(10), nullable=False, default="15th")
    balance = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    date_installed = db.Column(db.Date)
    address = db.Column(db.String(255))
    landmark = db.Column(db.String(255))
    contact_person = db.Column(db.String(120))
    mobile_number = db.Column(db.String(20))
    referral_credit_applied = db.Column(db.Boolean, default=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    customer = db.relationship("Customer", back_populates="subscriptions")
    plan = db.relationship("Plan")
    business_unit = db.relationship("BusinessUnit")
    invoices = db.relationship(
        "Invoice", back_populates="subscription", order_by="Invoice.due_date"
    )
    ppp_secret = db.relationship("PppSecret", uselist=False, back_populates="subscription")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_subscription_business_unit", "business_unit_id", "active"),
    )


class PppSecret(db.Model):
    """Router PPP account linked to a subscription."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscription.id"), unique=True, nullable=False
    )
    name = db.Column(db.String(120), nullable=False)
    profile = db.Column(db.String(60))
    service = db.Column(db.String(30), default="pppoe")
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("Subscription", back_populates="ppp_secret")


# ---------------------------------------------------------------------------
# Invoices & payments
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(30), unique=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    kind = db.Column(db.String(20), nullable=False, default="monthly")
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    amount_due = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    payment_status = _enum_column(InvoiceStatus, nullable=False, default=InvoiceStatus.UNPAID)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscription = db.relationship("Subscription", back_populates="invoices")
    payments = db.relationship("Payment", back_populates="invoice")

    __table_args__ = (
        db.Index("ix_invoice_subscription_due", "subscription_id", "due_date"),
        db.Index("ix_invoice_payment_status", "payment_status"),
    )


class Payment(db.Model):
    """A settlement against a subscription, optionally linked to one invoice."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    claimed_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    # Spillover credit reported when the payment was settled
    balance_delta = db.Column(db.Numeric(10, 2, asdecimal=True))
    mode = db.Column(db.String(30), nullable=False, default="Cash")
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.APPROVED)
    settlement_date = db.Column(db.Date, nullable=False)
    reference = db.Column(db.String(120), unique=True)
    wallet_provider = db.Column(db.String(60))
    proof_url = db.Column(db.String(255))
    notes = db.Column(db.Text)
    reviewed_by_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    reviewed_at = db.Column(db.DateTime)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("Subscription")
    invoice = db.relationship("Invoice", back_populates="payments")
    reviewed_by = db.relationship("User")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_payment_status", "status"),
        db.Index("ix_payment_subscription", "subscription_id"),
    )


class LedgerEntry(db.Model):
    """Signed balance movement; a subscription's balance is the sum of its entries."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    kind = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), unique=True)
    description = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("Subscription")
    invoice = db.relationship("Invoice")
    payment = db.relationship("Payment")


class PlanChange(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    old_plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    new_plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    old_monthly_fee = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    new_monthly_fee = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    change_date = db.Column(db.Date, nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    days_remaining = db.Column(db.Integer, nullable=False, default=0)
    net_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("Subscription")
    old_plan = db.relationship("Plan", foreign_keys=[old_plan_id])
    new_plan = db.relationship("Plan", foreign_keys=[new_plan_id])
    invoice = db.relationship("Invoice")


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------

class Expense(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    business_unit_id = db.Column(db.Integer, db.ForeignKey("business_unit.id"))
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    reason = db.Column(db.String(30), nullable=False, default="Others")
    notes = db.Column(db.Text)
    expense_date = db.Column(db.Date, nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    business_unit = db.relationship("BusinessUnit")
    subscription = db.relationship("Subscription")

    __table_args__ = (
        db.Index("ix_expense_date", "expense_date"),
    )


# ---------------------------------------------------------------------------
# Audit & numbering
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


class NumberSequence(db.Model):
    """Sequence counters per entity type and scope (e.g. invoice/2601)."""
    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.UniqueConstraint("entity_type", "scope_key", name="uq_number_sequence"),
    )
