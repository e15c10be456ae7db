"""Test suite for the ISP billing backend.

Tests cover: billing periods, proration, plan changes, payment
reconciliation and verification, invoice generation, scheduled tasks,
router / gateway / SMS clients, and the JSON routes.
"""

import datetime
import os
from decimal import Decimal
from unittest import mock

import pytest
import requests

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["SMS_ENABLED"] = "false"
os.environ["MIKROTIK_ENABLED"] = "false"
os.environ["PAYMONGO_ENABLED"] = "false"

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash

from app import create_app
from config_models import MikrotikConfig, PaymongoConfig, SmsConfig
from extensions import db
from mikrotik_client import MikrotikClient, MikrotikError
from models import (
    BusinessUnit,
    Customer,
    Invoice,
    InvoiceStatus,
    LedgerEntry,
    Payment,
    PaymentStatus,
    Plan,
    PlanChange,
    PppSecret,
    Subscription,
    User,
)
from paymongo_client import PaymongoClient, PaymongoError
from services.billing_period import billing_schedule, compute_billing_period
from services.errors import NotFound, PersistenceError, ValidationError
from services.invoice import (
    generate_activation_invoice,
    generate_disconnection_invoice,
    generate_invoices_for_business_unit,
    get_todays_tasks,
)
from services.ledger import ledger_balance, post_entry, recalculate_balance
from services.numbering import generate_invoice_number
from services.lifecycle import process_activation, process_disconnection
from services.plan_change import process_plan_change
from services.proration import preview_plan_change, prorate
from services.reconciliation import apply_payment, determine_payment_status, record_payment
from services.verification import approve_payment, reject_payment, submit_manual_payment
from sms import SmsError, send_bulk_sms, send_sms
from utils import normalize_mobile_number, validate_mobile_number

TEST_PASSWORD = "testpassword"
D = Decimal
UTC = datetime.timezone.utc


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    application.config["SMS_BATCH_DELAY"] = 0
    with application.app_context():
        admin = User.query.filter_by(username="admin").first()
        if admin:
            admin.password_hash = generate_password_hash(TEST_PASSWORD)
            admin.must_change_password = False
            db.session.commit()
    yield application


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def logged_in_client(client, app):
    """Create test client with logged-in admin session."""
    with app.app_context():
        user = User.query.filter_by(username="admin").first()
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
    return client


@pytest.fixture
def sample_data(app):
    """Business unit, plans, one subscription on the 1000 plan and its
    December 2025 invoice (1000 due on the 15th).

    Returns dict of IDs to avoid detached instance errors.
    """
    with app.app_context():
        unit = BusinessUnit(name="Bulihan", billing_anchor="15th")
        plan_1000 = Plan(name="Plan 1000", monthly_fee=D("1000.00"))
        plan_1500 = Plan(name="Plan 1500", monthly_fee=D("1500.00"))
        plan_799 = Plan(name="Plan 799", monthly_fee=D("799.00"))
        plan_1000b = Plan(name="Plan 1000 Plus", monthly_fee=D("1000.00"))
        db.session.add_all([unit, plan_1000, plan_1500, plan_799, plan_1000b])
        db.session.flush()

        customer = Customer(name="Juan Dela Cruz", mobile_number="09171234567")
        db.session.add(customer)
        db.session.flush()

        subscription = Subscription(
            customer=customer,
            plan=plan_1000,
            business_unit=unit,
            billing_anchor="15th",
            date_installed=datetime.date(2025, 6, 1),
            balance=0,
        )
        db.session.add(subscription)
        db.session.flush()
        db.session.add(PppSecret(subscription=subscription, name="juan.delacruz", profile="Plan 1000"))

        invoice = Invoice(
            invoice_number=generate_invoice_number(datetime.date(2025, 12, 15)),
            subscription=subscription,
            kind="monthly",
            period_start=datetime.date(2025, 11, 15),
            period_end=datetime.date(2025, 12, 15),
            due_date=datetime.date(2025, 12, 15),
            amount_due=D("1000.00"),
            payment_status=InvoiceStatus.UNPAID,
        )
        db.session.add(invoice)
        db.session.flush()
        post_entry(subscription, "invoice", D("1000.00"), invoice_id=invoice.id)
        db.session.commit()

        return {
            "unit_id": unit.id,
            "plan_1000_id": plan_1000.id,
            "plan_1500_id": plan_1500.id,
            "plan_799_id": plan_799.id,
            "plan_1000b_id": plan_1000b.id,
            "customer_id": customer.id,
            "subscription_id": subscription.id,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
        }


def _add_subscription(sample_data, installed, referrer_id=None, name="Maria Santos"):
    customer = Customer(name=name, mobile_number="09181234567", referrer_id=referrer_id)
    db.session.add(customer)
    db.session.flush()
    subscription = Subscription(
        customer=customer,
        plan_id=sample_data["plan_1000_id"],
        business_unit_id=sample_data["unit_id"],
        billing_anchor="15th",
        date_installed=installed,
        balance=0,
    )
    db.session.add(subscription)
    db.session.commit()
    return subscription.id


def _balance(subscription_id):
    return db.session.get(Subscription, subscription_id).balance


# ---------------------------------------------------------------------------
# Utility tests
# ---------------------------------------------------------------------------


class TestUtilityFunctions:
    def test_validate_mobile_number_valid(self):
        assert validate_mobile_number("09171234567") is None

    def test_validate_mobile_number_wrong_prefix(self):
        assert validate_mobile_number("08171234567") is not None

    def test_validate_mobile_number_wrong_length(self):
        assert validate_mobile_number("0917123456") is not None

    def test_validate_mobile_number_empty(self):
        assert validate_mobile_number("") == "Mobile number is required"

    def test_normalize_mobile_number(self):
        assert normalize_mobile_number("09171234567") == "639171234567"
        assert normalize_mobile_number("639171234567") == "639171234567"
        assert normalize_mobile_number("0917-123-4567") == "639171234567"


# ---------------------------------------------------------------------------
# Billing periods
# ---------------------------------------------------------------------------


class TestBillingPeriod:
    def test_before_anchor_ends_this_month(self):
        period = compute_billing_period("15th", datetime.date(2025, 12, 10))
        assert period.start == datetime.date(2025, 11, 15)
        assert period.end == datetime.date(2025, 12, 15)
        assert period.days_in_period == 30

    def test_on_anchor_starts_new_period(self):
        period = compute_billing_period("15th", datetime.date(2025, 12, 15))
        assert period.start == datetime.date(2025, 12, 15)
        assert period.end == datetime.date(2026, 1, 15)

    def test_thirtieth_anchor_clamps_in_february(self):
        period = compute_billing_period("30th", datetime.date(2026, 2, 10))
        assert period.start == datetime.date(2026, 1, 30)
        assert period.end == datetime.date(2026, 2, 28)
        assert period.days_in_period == 29

    def test_thirtieth_anchor_after_february(self):
        period = compute_billing_period("30th", datetime.date(2026, 3, 1))
        assert period.start == datetime.date(2026, 2, 28)
        assert period.end == datetime.date(2026, 3, 30)

    def test_leap_day_is_an_anchor(self):
        period = compute_billing_period("30th", datetime.date(2024, 2, 29))
        assert period.start == datetime.date(2024, 2, 29)
        assert period.end == datetime.date(2024, 3, 30)

    def test_integer_anchor_accepted(self):
        assert compute_billing_period(15, datetime.date(2025, 12, 10)) == compute_billing_period(
            "15th", datetime.date(2025, 12, 10)
        )

    def test_invalid_anchor(self):
        with pytest.raises(ValidationError):
            compute_billing_period("20th", datetime.date(2025, 12, 10))

    @pytest.mark.parametrize("anchor", ["15th", "30th"])
    def test_period_contains_reference_for_every_day(self, anchor):
        day = datetime.date(2024, 1, 1)
        while day < datetime.date(2026, 1, 1):
            period = compute_billing_period(anchor, day)
            assert period.start <= day < period.end
            assert (period.end - day).days <= 31
            assert 28 <= period.days_in_period <= 31
            day += datetime.timedelta(days=1)

    def test_schedule_fifteenth(self):
        dates = billing_schedule("15th", 2025, 12)
        assert dates.generation_date == datetime.date(2025, 12, 10)
        assert dates.due_date == datetime.date(2025, 12, 15)
        assert dates.disconnection_date == datetime.date(2025, 12, 20)
        assert dates.period_start == datetime.date(2025, 11, 15)

    def test_schedule_thirtieth_february(self):
        dates = billing_schedule("30th", 2026, 2)
        assert dates.generation_date == datetime.date(2026, 2, 25)
        assert dates.due_date == datetime.date(2026, 2, 28)
        assert dates.disconnection_date == datetime.date(2026, 3, 5)
        assert dates.period_start == datetime.date(2026, 1, 30)

    def test_schedule_thirtieth_december_disconnects_next_year(self):
        dates = billing_schedule("30th", 2025, 12)
        assert dates.disconnection_date == datetime.date(2026, 1, 5)


# ---------------------------------------------------------------------------
# Proration
# ---------------------------------------------------------------------------


class TestProration:
    def test_upgrade_mid_period(self):
        preview = preview_plan_change(1000, 1500, "15th", datetime.date(2025, 12, 10))
        assert preview.days_remaining == 5
        assert preview.days_in_period == 30
        assert preview.credit_amount == D("166.67")
        assert preview.charge_amount == D("250.00")
        assert preview.net_amount == D("83.33")

    def test_downgrade_mid_period(self):
        preview = preview_plan_change(1500, 1000, "15th", datetime.date(2025, 12, 10))
        assert preview.credit_amount == D("250.00")
        assert preview.charge_amount == D("166.67")
        assert preview.net_amount == D("-83.33")

    def test_change_on_period_start_prorates_whole_period(self):
        preview = preview_plan_change(
            1000, 1500, "15th", datetime.date(2025, 11, 15),
            reference_date=datetime.date(2025, 12, 10),
        )
        assert preview.days_remaining == 30
        assert preview.net_amount == D("500.00")

    def test_change_on_period_end_has_no_days(self):
        preview = preview_plan_change(
            1000, 1500, "15th", datetime.date(2025, 12, 15),
            reference_date=datetime.date(2025, 12, 10),
        )
        assert preview.days_remaining == 0
        assert preview.net_amount == D("0.00")

    def test_change_after_period_rejected(self):
        with pytest.raises(ValidationError):
            preview_plan_change(
                1000, 1500, "15th", datetime.date(2025, 12, 20),
                reference_date=datetime.date(2025, 12, 10),
            )

    def test_change_before_period_rejected(self):
        with pytest.raises(ValidationError):
            preview_plan_change(
                1000, 1500, "15th", datetime.date(2025, 11, 10),
                reference_date=datetime.date(2025, 12, 10),
            )

    def test_equal_fees_no_adjustment(self):
        preview = preview_plan_change(999, 999, "15th", datetime.date(2025, 12, 10))
        assert preview.net_amount == D("0.00")
        assert preview.description == "No adjustment"

    def test_negative_fee_rejected(self):
        with pytest.raises(ValidationError):
            preview_plan_change(-1, 1500, "15th", datetime.date(2025, 12, 10))

    def test_rounding_half_up_on_short_period(self):
        preview = preview_plan_change(799, 999, "30th", datetime.date(2026, 2, 10))
        assert preview.days_in_period == 29
        assert preview.days_remaining == 18
        assert preview.credit_amount == D("495.93")
        assert preview.charge_amount == D("620.07")
        assert preview.net_amount == D("124.14")

    def test_prorate_helper(self):
        assert prorate(1000, 0, 30) == D("0.00")
        assert prorate(1000, 10, 31) == D("322.58")
        with pytest.raises(ValidationError):
            prorate(1000, 1, 0)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestReconciliation:
    def test_determine_payment_status(self):
        assert determine_payment_status(1000, 1000) is InvoiceStatus.PAID
        assert determine_payment_status(1200, 1000) is InvoiceStatus.PAID
        assert determine_payment_status(600, 1000) is InvoiceStatus.PARTIALLY_PAID
        assert determine_payment_status(0, 1000) is InvoiceStatus.UNPAID

    def test_exact_payment(self, app_ctx, sample_data):
        result = apply_payment(sample_data["invoice_id"], D("1000"))
        assert result.new_status is InvoiceStatus.PAID
        assert result.balance_delta == D("0")
        assert result.new_balance == D("0.00")
        invoice = db.session.get(Invoice, sample_data["invoice_id"])
        assert invoice.payment_status is InvoiceStatus.PAID

    def test_partial_payment(self, app_ctx, sample_data):
        result = apply_payment(sample_data["invoice_id"], D("600"))
        assert result.new_status is InvoiceStatus.PARTIALLY_PAID
        assert result.balance_delta == D("0")
        assert result.new_balance == D("400.00")

    def test_overpayment_becomes_credit(self, app_ctx, sample_data):
        result = apply_payment(sample_data["invoice_id"], D("1200"))
        assert result.new_status is InvoiceStatus.PAID
        assert result.balance_delta == D("-200.00")
        assert result.new_balance == D("-200.00")

    def test_second_payment_spills_over(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("600"))
        result = apply_payment(sample_data["invoice_id"], D("600"))
        assert result.new_status is InvoiceStatus.PAID
        assert result.balance_delta == D("-200.00")
        assert result.new_balance == D("-200.00")

    @pytest.mark.parametrize("amount", [0, -5, "abc"])
    def test_invalid_amount(self, app_ctx, sample_data, amount):
        with pytest.raises(ValidationError):
            apply_payment(sample_data["invoice_id"], amount)

    def test_unknown_invoice(self, app_ctx, sample_data):
        with pytest.raises(NotFound):
            apply_payment(9999, D("100"))

    def test_reference_is_idempotent(self, app_ctx, sample_data):
        first = apply_payment(sample_data["invoice_id"], D("600"), mode="Online", reference="pay_123")
        second = apply_payment(sample_data["invoice_id"], D("600"), mode="Online", reference="pay_123")
        assert second.applied is False
        assert second.payment_id == first.payment_id
        assert second.new_status is InvoiceStatus.PARTIALLY_PAID
        assert Payment.query.count() == 1
        assert _balance(sample_data["subscription_id"]) == D("400.00")

    def test_balance_matches_ledger(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("300"))
        apply_payment(sample_data["invoice_id"], D("1000"))
        sub_id = sample_data["subscription_id"]
        assert ledger_balance(sub_id) == _balance(sub_id) == D("-300.00")

    def test_recalculate_balance_repairs_drift(self, app_ctx, sample_data):
        subscription = db.session.get(Subscription, sample_data["subscription_id"])
        subscription.balance = D("5.00")
        db.session.commit()
        assert recalculate_balance(subscription.id) == D("1000.00")
        assert _balance(subscription.id) == D("1000.00")

    def test_record_payment_uses_oldest_open_invoice(self, app_ctx, sample_data):
        result = record_payment(sample_data["subscription_id"], D("1000"))
        payment = db.session.get(Payment, result.payment_id)
        assert payment.invoice_id == sample_data["invoice_id"]
        assert result.new_status is InvoiceStatus.PAID

    def test_record_payment_without_open_invoice_is_credit(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("1000"))
        result = record_payment(sample_data["subscription_id"], D("500"))
        assert result.new_status is None
        assert result.balance_delta == D("-500.00")
        assert result.new_balance == D("-500.00")

    def test_record_payment_invalid_mode(self, app_ctx, sample_data):
        with pytest.raises(ValidationError):
            record_payment(sample_data["subscription_id"], D("100"), mode="Barter")

    def test_replay_reports_original_spillover(self, app_ctx, sample_data):
        first = apply_payment(sample_data["invoice_id"], D("1200"), mode="Online", reference="pay_456")
        second = apply_payment(sample_data["invoice_id"], D("1200"), mode="Online", reference="pay_456")
        assert first.balance_delta == D("-200.00")
        assert second.applied is False
        assert second.balance_delta == D("-200.00")
        assert db.session.get(Payment, first.payment_id).balance_delta == D("-200.00")

    def test_record_payment_replay_after_invoice_settled(self, app_ctx, sample_data):
        first = record_payment(sample_data["subscription_id"], D("1000"), reference="OR-2001")
        second = record_payment(sample_data["subscription_id"], D("1000"), reference="OR-2001")
        assert second.applied is False
        assert second.payment_id == first.payment_id
        assert second.new_status is InvoiceStatus.PAID
        assert Payment.query.count() == 1
        assert _balance(sample_data["subscription_id"]) == D("0.00")


# ---------------------------------------------------------------------------
# Manual payment verification
# ---------------------------------------------------------------------------


class TestVerification:
    def _submit(self, sample_data, amount="1000", reference="GC-0001"):
        return submit_manual_payment(
            sample_data["subscription_id"], amount, "GCash", reference,
            proof_url="https://files.example/proof.jpg",
        )

    def test_submit_marks_invoice_pending(self, app_ctx, sample_data):
        payment = self._submit(sample_data)
        assert payment.status is PaymentStatus.PENDING
        assert payment.mode == "E-Wallet"
        assert payment.invoice_id == sample_data["invoice_id"]
        invoice = db.session.get(Invoice, sample_data["invoice_id"])
        assert invoice.payment_status is InvoiceStatus.PENDING_VERIFICATION
        assert _balance(sample_data["subscription_id"]) == D("1000.00")

    def test_submit_requires_reference(self, app_ctx, sample_data):
        with pytest.raises(ValidationError):
            self._submit(sample_data, reference="")

    def test_duplicate_reference_rejected(self, app_ctx, sample_data):
        self._submit(sample_data)
        with pytest.raises(ValidationError):
            self._submit(sample_data)

    def test_approve_applies_balance(self, app_ctx, sample_data):
        payment = self._submit(sample_data)
        result = approve_payment(payment.id)
        assert result.new_status is InvoiceStatus.PAID
        assert result.new_balance == D("0.00")
        assert db.session.get(Payment, payment.id).status is PaymentStatus.APPROVED

    def test_approve_with_corrected_amount(self, app_ctx, sample_data):
        payment = self._submit(sample_data)
        result = approve_payment(payment.id, approved_amount="600", admin_notes="Screenshot shows 600")
        stored = db.session.get(Payment, payment.id)
        assert stored.amount == D("600.00")
        assert stored.claimed_amount == D("1000.00")
        assert result.new_status is InvoiceStatus.PARTIALLY_PAID
        assert result.new_balance == D("400.00")

    def test_approve_twice_does_not_double_apply(self, app_ctx, sample_data):
        payment = self._submit(sample_data)
        approve_payment(payment.id)
        with pytest.raises(ValidationError):
            approve_payment(payment.id)
        assert _balance(sample_data["subscription_id"]) == D("0.00")
        assert LedgerEntry.query.filter_by(payment_id=payment.id).count() == 1

    def test_reject_leaves_balance(self, app_ctx, sample_data):
        payment = self._submit(sample_data)
        result = reject_payment(payment.id, reason="Reference not found")
        stored = db.session.get(Payment, payment.id)
        assert stored.status is PaymentStatus.REJECTED
        assert stored.amount == D("0.00")
        assert result.new_status is InvoiceStatus.UNPAID
        assert _balance(sample_data["subscription_id"]) == D("1000.00")

    def test_reject_keeps_partial_status(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("400"))
        payment = self._submit(sample_data, amount="600")
        result = reject_payment(payment.id)
        assert result.new_status is InvoiceStatus.PARTIALLY_PAID

    def test_reject_with_other_pending_stays_pending(self, app_ctx, sample_data):
        first = self._submit(sample_data, reference="GC-1")
        self._submit(sample_data, reference="GC-2")
        result = reject_payment(first.id)
        assert result.new_status is InvoiceStatus.PENDING_VERIFICATION

    def test_terminal_states(self, app_ctx, sample_data):
        approved = self._submit(sample_data, reference="GC-1")
        approve_payment(approved.id)
        with pytest.raises(ValidationError):
            reject_payment(approved.id)
        rejected = self._submit(sample_data, reference="GC-2")
        reject_payment(rejected.id)
        with pytest.raises(ValidationError):
            approve_payment(rejected.id)

    def test_unknown_payment(self, app_ctx, sample_data):
        with pytest.raises(NotFound):
            approve_payment(9999)

    def test_concurrent_modification_is_rejected(self, app_ctx, sample_data):
        payment = self._submit(sample_data)
        payment_id = payment.id
        db.session.get(Payment, payment_id)
        # Another writer bumps the row version behind this session's back
        db.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(version=Payment.version + 1)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(PersistenceError):
            approve_payment(payment_id)
        assert db.session.get(Payment, payment_id).status is PaymentStatus.PENDING
        assert _balance(sample_data["subscription_id"]) == D("1000.00")

    def test_late_approval_spills_into_credit(self, app_ctx, sample_data):
        pending = self._submit(sample_data)
        apply_payment(sample_data["invoice_id"], D("1000"))
        result = approve_payment(pending.id)
        assert result.new_status is InvoiceStatus.PAID
        assert result.balance_delta == D("-1000.00")
        assert result.new_balance == D("-1000.00")

    def test_settled_payment_ignores_pending_claim(self, app_ctx, sample_data):
        self._submit(sample_data)
        result = apply_payment(sample_data["invoice_id"], D("600"))
        assert result.new_status is InvoiceStatus.PARTIALLY_PAID
        assert result.new_balance == D("400.00")
        invoice = db.session.get(Invoice, sample_data["invoice_id"])
        assert invoice.payment_status is InvoiceStatus.PARTIALLY_PAID

    def test_submit_keeps_partial_status(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("400"))
        self._submit(sample_data, amount="600")
        invoice = db.session.get(Invoice, sample_data["invoice_id"])
        assert invoice.payment_status is InvoiceStatus.PARTIALLY_PAID

    def test_pending_reference_is_not_treated_as_applied(self, app_ctx, sample_data):
        pending = self._submit(sample_data)
        with pytest.raises(ValidationError):
            apply_payment(sample_data["invoice_id"], D("1000"), mode="Online", reference="GC-0001")
        assert Payment.query.count() == 1
        assert db.session.get(Payment, pending.id).status is PaymentStatus.PENDING
        assert _balance(sample_data["subscription_id"]) == D("1000.00")


# ---------------------------------------------------------------------------
# Plan changes
# ---------------------------------------------------------------------------


class TestPlanChange:
    CHANGE_DATE = datetime.date(2025, 12, 10)

    def test_upgrade_creates_prorated_invoice(self, app_ctx, sample_data):
        result = process_plan_change(
            sample_data["subscription_id"], sample_data["plan_1500_id"], self.CHANGE_DATE
        )
        assert result.success is True
        invoice = result.prorated_invoice
        assert invoice.amount_due == D("83.33")
        assert invoice.kind == "prorated"
        assert invoice.payment_status is InvoiceStatus.UNPAID
        assert invoice.due_date == datetime.date(2025, 12, 15)
        assert invoice.invoice_number == "INV2512-0002"
        assert result.credit_entry is None
        subscription = db.session.get(Subscription, sample_data["subscription_id"])
        assert subscription.plan_id == sample_data["plan_1500_id"]
        assert subscription.balance == D("1083.33")
        change = PlanChange.query.one()
        assert change.net_amount == D("83.33")
        assert change.invoice_id == invoice.id

    def test_downgrade_posts_credit(self, app_ctx, sample_data):
        result = process_plan_change(
            sample_data["subscription_id"], sample_data["plan_799_id"], self.CHANGE_DATE
        )
        assert result.success is True
        assert result.prorated_invoice is None
        assert result.credit_entry.amount == D("-33.50")
        assert result.credit_entry.kind == "credit"
        assert Invoice.query.count() == 1
        assert _balance(sample_data["subscription_id"]) == D("966.50")

    def test_equal_fee_records_no_adjustment(self, app_ctx, sample_data):
        result = process_plan_change(
            sample_data["subscription_id"], sample_data["plan_1000b_id"], self.CHANGE_DATE
        )
        assert result.success is True
        assert result.prorated_invoice is None
        assert result.credit_entry is None
        assert LedgerEntry.query.count() == 1
        assert PlanChange.query.count() == 1
        assert db.session.get(Subscription, sample_data["subscription_id"]).plan_id == sample_data["plan_1000b_id"]

    def test_same_plan_rejected(self, app_ctx, sample_data):
        result = process_plan_change(
            sample_data["subscription_id"], sample_data["plan_1000_id"], self.CHANGE_DATE
        )
        assert result.success is False
        assert result.error_type == "validation_error"

    def test_unknown_plan(self, app_ctx, sample_data):
        result = process_plan_change(sample_data["subscription_id"], 9999, self.CHANGE_DATE)
        assert result.success is False
        assert result.error_type == "not_found"

    def test_unknown_subscription(self, app_ctx, sample_data):
        result = process_plan_change(9999, sample_data["plan_1500_id"], self.CHANGE_DATE)
        assert result.success is False
        assert result.error_type == "not_found"

    def test_failure_rolls_back_everything(self, app_ctx, sample_data):
        with mock.patch(
            "services.plan_change.generate_invoice_number",
            side_effect=SQLAlchemyError("disk full"),
        ):
            result = process_plan_change(
                sample_data["subscription_id"], sample_data["plan_1500_id"], self.CHANGE_DATE
            )
        assert result.success is False
        assert result.error_type == "persistence_error"
        subscription = db.session.get(Subscription, sample_data["subscription_id"])
        assert subscription.plan_id == sample_data["plan_1000_id"]
        assert subscription.balance == D("1000.00")
        assert PlanChange.query.count() == 0
        assert Invoice.query.count() == 1

    def test_router_profile_synced(self, app_ctx, sample_data):
        router = mock.MagicMock()
        result = process_plan_change(
            sample_data["subscription_id"], sample_data["plan_1500_id"], self.CHANGE_DATE,
            router=router,
        )
        assert result.warning is None
        router.update_profile.assert_called_once_with("juan.delacruz", {"profile": "Plan 1500"})
        secret = PppSecret.query.filter_by(subscription_id=sample_data["subscription_id"]).one()
        assert secret.profile == "Plan 1500"

    def test_router_failure_is_a_warning(self, app_ctx, sample_data):
        router = mock.MagicMock()
        router.update_profile.side_effect = MikrotikError("connection timed out")
        result = process_plan_change(
            sample_data["subscription_id"], sample_data["plan_1500_id"], self.CHANGE_DATE,
            router=router,
        )
        assert result.success is True
        assert "router update failed" in result.warning
        db.session.expire_all()
        subscription = db.session.get(Subscription, sample_data["subscription_id"])
        assert subscription.plan_id == sample_data["plan_1500_id"]
        assert subscription.balance == D("1083.33")


# ---------------------------------------------------------------------------
# Invoice generation
# ---------------------------------------------------------------------------


class TestInvoiceGeneration:
    def test_generates_full_month(self, app_ctx, sample_data):
        result = generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        assert result.generated == 1
        assert result.errors == []
        invoice = Invoice.query.filter_by(due_date=datetime.date(2026, 1, 15)).one()
        assert invoice.amount_due == D("1000.00")
        assert invoice.period_start == datetime.date(2025, 12, 15)
        assert invoice.invoice_number == "INV2601-0001"
        assert _balance(sample_data["subscription_id"]) == D("2000.00")

    def test_second_run_skips(self, app_ctx, sample_data):
        generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        result = generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        assert result.generated == 0
        assert result.skipped == 1

    def test_new_install_is_prorated(self, app_ctx, sample_data):
        sub_id = _add_subscription(sample_data, datetime.date(2025, 12, 25))
        result = generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        assert result.generated == 2
        invoice = Invoice.query.filter_by(subscription_id=sub_id).one()
        assert invoice.amount_due == D("677.42")
        assert "Prorated" in invoice.notes

    def test_future_install_skipped(self, app_ctx, sample_data):
        _add_subscription(sample_data, datetime.date(2026, 2, 1))
        result = generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        assert result.generated == 1
        assert result.skipped == 1

    def test_referral_discount_applied_once(self, app_ctx, sample_data):
        sub_id = _add_subscription(
            sample_data, datetime.date(2025, 10, 1), referrer_id=sample_data["customer_id"]
        )
        generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 2, send_sms=False)
        amounts = [
            i.amount_due
            for i in Invoice.query.filter_by(subscription_id=sub_id).order_by(Invoice.due_date)
        ]
        assert amounts == [D("700.00"), D("1000.00")]
        assert db.session.get(Subscription, sub_id).referral_credit_applied is True

    def test_existing_credit_applied(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("1200"))
        generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        invoice = Invoice.query.filter_by(due_date=datetime.date(2026, 1, 15)).one()
        assert invoice.payment_status is InvoiceStatus.PARTIALLY_PAID
        credit = Payment.query.filter_by(invoice_id=invoice.id, mode="Credit").one()
        assert credit.amount == D("200.00")
        sub_id = sample_data["subscription_id"]
        assert _balance(sub_id) == ledger_balance(sub_id) == D("800.00")

    def test_credit_covering_invoice_marks_paid(self, app_ctx, sample_data):
        apply_payment(sample_data["invoice_id"], D("2500"))
        generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1, send_sms=False)
        invoice = Invoice.query.filter_by(due_date=datetime.date(2026, 1, 15)).one()
        assert invoice.payment_status is InvoiceStatus.PAID
        assert _balance(sample_data["subscription_id"]) == D("-500.00")

    def test_sms_sent_for_generated_invoices(self, app_ctx, sample_data):
        app_ctx.config["SMS_CONFIG"] = SmsConfig(
            enabled=True, api_key="key", sender_name="ALLSTAR",
            base_url="https://api.semaphore.co/api/v4",
        )
        with mock.patch("sms.requests.post") as post:
            result = generate_invoices_for_business_unit(sample_data["unit_id"], 2026, 1)
        assert result.sms_sent == 1
        assert post.call_args.kwargs["data"]["number"] == "639171234567"

    def test_unknown_business_unit(self, app_ctx, sample_data):
        with pytest.raises(NotFound):
            generate_invoices_for_business_unit(9999, 2026, 1)

    def test_activation_invoice(self, app_ctx, sample_data):
        invoice = generate_activation_invoice(sample_data["subscription_id"], datetime.date(2025, 12, 10))
        assert invoice.kind == "activation"
        assert invoice.amount_due == D("166.67")
        assert invoice.due_date == datetime.date(2025, 12, 15)

    def test_disconnection_invoice(self, app_ctx, sample_data):
        invoice = generate_disconnection_invoice(sample_data["subscription_id"], datetime.date(2025, 12, 25))
        assert invoice.kind == "disconnection"
        assert invoice.period_start == datetime.date(2025, 12, 15)
        assert invoice.amount_due == D("322.58")
        assert invoice.due_date == datetime.date(2025, 12, 25)

    def test_disconnection_without_days(self, app_ctx, sample_data):
        with pytest.raises(ValidationError):
            generate_disconnection_invoice(sample_data["subscription_id"], datetime.date(2025, 12, 15))

    def test_disconnection_without_history(self, app_ctx, sample_data):
        sub_id = _add_subscription(sample_data, datetime.date(2025, 12, 1))
        with pytest.raises(ValidationError):
            generate_disconnection_invoice(sub_id, datetime.date(2025, 12, 25))


# ---------------------------------------------------------------------------
# Activation / disconnection
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_disconnection_disables_router_account(self, app_ctx, sample_data):
        router = mock.MagicMock()
        result = process_disconnection(
            sample_data["subscription_id"], datetime.date(2025, 12, 25), router=router
        )
        assert result.active is False
        assert result.invoice.amount_due == D("322.58")
        router.update_profile.assert_called_once_with("juan.delacruz", {"profile": "DC"})
        router.set_disabled.assert_called_once_with("juan.delacruz", True)
        assert db.session.get(Subscription, sample_data["subscription_id"]).active is False

    def test_disconnection_router_failure_is_warning(self, app_ctx, sample_data):
        router = mock.MagicMock()
        router.update_profile.side_effect = MikrotikError("unreachable")
        result = process_disconnection(
            sample_data["subscription_id"], datetime.date(2025, 12, 25),
            generate_invoice=False, router=router,
        )
        assert result.success is True
        assert "router update failed" in result.warning
        assert db.session.get(Subscription, sample_data["subscription_id"]).active is False

    def test_activation_enables_router_account(self, app_ctx, sample_data):
        subscription = db.session.get(Subscription, sample_data["subscription_id"])
        subscription.active = False
        db.session.commit()
        router = mock.MagicMock()
        result = process_activation(
            sample_data["subscription_id"], datetime.date(2025, 12, 10),
            generate_invoice=False, router=router,
        )
        assert result.active is True
        assert result.invoice is None
        router.set_disabled.assert_called_once_with("juan.delacruz", False)

    def test_activating_active_subscription_rejected(self, app_ctx, sample_data):
        with pytest.raises(ValidationError):
            process_activation(sample_data["subscription_id"], generate_invoice=False)

    def test_activation_invoice_sent_after_commit(self, app_ctx, sample_data):
        subscription = db.session.get(Subscription, sample_data["subscription_id"])
        subscription.active = False
        db.session.commit()
        with mock.patch("services.lifecycle.notify_invoice") as notify:
            result = process_activation(
                sample_data["subscription_id"], datetime.date(2025, 12, 10), router=mock.MagicMock()
            )
        assert result.invoice.amount_due == D("166.67")
        notify.assert_called_once()
        assert notify.call_args[0][1].id == result.invoice.id
        assert _balance(sample_data["subscription_id"]) == D("1166.67")

    def test_failed_disconnection_leaves_no_invoice(self, app_ctx, sample_data):
        router = mock.MagicMock()
        with mock.patch(
            "services.lifecycle.log_action", side_effect=SQLAlchemyError("database is locked")
        ), mock.patch("services.lifecycle.notify_invoice") as notify:
            with pytest.raises(PersistenceError):
                process_disconnection(
                    sample_data["subscription_id"], datetime.date(2025, 12, 25), router=router
                )
        notify.assert_not_called()
        router.set_disabled.assert_not_called()
        assert Invoice.query.count() == 1
        assert LedgerEntry.query.count() == 1
        assert db.session.get(Subscription, sample_data["subscription_id"]).active is True
        assert _balance(sample_data["subscription_id"]) == D("1000.00")


# ---------------------------------------------------------------------------
# Scheduled tasks
# ---------------------------------------------------------------------------


class TestTodaysTasks:
    def _tasks(self, *args):
        return get_todays_tasks(datetime.datetime(*args, tzinfo=UTC), offset_hours=8)

    def test_generation_day_in_local_time(self):
        tasks = self._tasks(2026, 1, 9, 17, 0)  # 01:00 on the 10th in UTC+8
        assert tasks.local_date == datetime.date(2026, 1, 10)
        assert tasks.generate_invoices == ["15th"]

    def test_day_before_generation(self):
        tasks = self._tasks(2026, 1, 9, 15, 0)
        assert tasks.generate_invoices == []

    def test_due_reminders(self):
        assert self._tasks(2026, 1, 15, 2, 0).due_reminders == ["15th"]
        assert self._tasks(2026, 1, 30, 2, 0).due_reminders == ["30th"]

    def test_february_due_on_last_day(self):
        assert self._tasks(2026, 2, 28, 2, 0).due_reminders == ["30th"]

    def test_disconnection_warnings(self):
        assert self._tasks(2026, 1, 20, 2, 0).disconnection_warnings == ["15th"]
        assert self._tasks(2026, 1, 5, 2, 0).disconnection_warnings == ["30th"]

    def test_thirtieth_generation(self):
        assert self._tasks(2026, 1, 25, 2, 0).generate_invoices == ["30th"]


# ---------------------------------------------------------------------------
# External clients
# ---------------------------------------------------------------------------


def _response(payload=None, status=200):
    response = mock.MagicMock()
    response.status_code = status
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error")
    return response


MIKROTIK = MikrotikConfig(
    enabled=True, host="10.0.0.1", port=80, api_port=8728,
    user="api", password="secret", timeout=5,
)


class TestMikrotikClient:
    def test_update_profile_over_rest(self):
        client = MikrotikClient(MIKROTIK)
        with mock.patch("mikrotik_client.requests.request") as request:
            request.side_effect = [_response([{".id": "*1", "name": "juan"}]), _response({})]
            assert client.update_profile("juan", {"profile": "100MBPS"}) is True
        method, url = request.call_args_list[1].args
        assert method == "PATCH"
        assert url == "http://10.0.0.1:80/rest/ppp/secret/*1"
        assert request.call_args_list[1].kwargs["json"] == {"profile": "100MBPS"}

    def test_https_fallback(self):
        client = MikrotikClient(MIKROTIK)
        with mock.patch("mikrotik_client.requests.request") as request:
            request.side_effect = [
                requests.exceptions.ConnectionError("refused"),
                _response({"uptime": "1d"}),
                _response([]), _response([]), _response([]),
            ]
            overview = client.get_overview()
        assert overview["resources"] == {"uptime": "1d"}
        assert request.call_args_list[1].args[1] == "https://10.0.0.1/rest/system/resource"

    def test_binary_api_fallback(self):
        client = MikrotikClient(MIKROTIK)
        api = mock.MagicMock()
        secrets = api.path.return_value
        secrets.__iter__.return_value = iter([{".id": "*2", "name": "juan"}])
        with mock.patch("mikrotik_client.requests.request",
                        side_effect=requests.exceptions.ConnectionError("refused")), \
                mock.patch("mikrotik_client.connect", return_value=api) as connect:
            client.update_profile("juan", {"profile": "DC"})
        connect.assert_called_once()
        api.path.assert_called_with("ppp", "secret")
        secrets.update.assert_called_once_with(**{".id": "*2", "profile": "DC"})
        api.close.assert_called_once()

    def test_all_transports_fail(self):
        client = MikrotikClient(MIKROTIK)
        with mock.patch("mikrotik_client.requests.request",
                        side_effect=requests.exceptions.Timeout("slow")), \
                mock.patch("mikrotik_client.connect", side_effect=OSError("no route")):
            with pytest.raises(MikrotikError):
                client.set_disabled("juan", True)


PAYMONGO = PaymongoConfig(enabled=True, secret_key="sk_test_123", base_url="https://api.paymongo.com/v1")


class TestPaymongoClient:
    def test_create_source(self):
        payload = {"data": {"id": "src_1", "attributes": {
            "status": "pending", "redirect": {"checkout_url": "https://pm.link/src_1"},
        }}}
        with mock.patch("paymongo_client.requests.post", return_value=_response(payload)) as post:
            source = PaymongoClient(PAYMONGO).create_source(
                D("1000.00"), "gcash", "https://isp/ok", "https://isp/fail"
            )
        assert source == {"id": "src_1", "checkout_url": "https://pm.link/src_1", "status": "pending"}
        body = post.call_args.kwargs["json"]["data"]["attributes"]
        assert body["amount"] == 100000
        assert body["currency"] == "PHP"
        assert post.call_args.kwargs["auth"] == ("sk_test_123", "")

    def test_create_payment(self):
        payload = {"data": {"id": "pay_1", "attributes": {"status": "paid", "amount": 83333}}}
        with mock.patch("paymongo_client.requests.post", return_value=_response(payload)):
            charge = PaymongoClient(PAYMONGO).create_payment("src_1", D("833.33"), "Invoice 1")
        assert charge == {"id": "pay_1", "status": "paid", "amount": D("833.33")}

    def test_invalid_source_type(self):
        with pytest.raises(PaymongoError):
            PaymongoClient(PAYMONGO).create_source(100, "bitcoin", "a", "b")

    def test_http_error(self):
        with mock.patch("paymongo_client.requests.post", return_value=_response({}, status=400)):
            with pytest.raises(PaymongoError):
                PaymongoClient(PAYMONGO).create_payment("src_1", 100, "x")


SMS = SmsConfig(enabled=True, api_key="key", sender_name="ALLSTAR", base_url="https://api.semaphore.co/api/v4")


class TestSms:
    def test_disabled_sends_nothing(self):
        config = SmsConfig(enabled=False, api_key="", sender_name="ALLSTAR", base_url="x")
        with mock.patch("sms.requests.post") as post:
            assert send_sms(config, "09171234567", "hi") is False
        post.assert_not_called()

    def test_send_normalizes_number(self):
        with mock.patch("sms.requests.post", return_value=_response({})) as post:
            assert send_sms(SMS, "09171234567", "hello") is True
        data = post.call_args.kwargs["data"]
        assert data["number"] == "639171234567"
        assert data["sendername"] == "ALLSTAR"
        assert post.call_args.args[0] == "https://api.semaphore.co/api/v4/messages"

    def test_gateway_error(self):
        with mock.patch("sms.requests.post", return_value=_response({}, status=500)):
            with pytest.raises(SmsError):
                send_sms(SMS, "09171234567", "hello")

    def test_bulk_sends_in_batches(self):
        messages = [("09171234567", f"msg {i}") for i in range(12)]
        with mock.patch("sms.requests.post", return_value=_response({})) as post, \
                mock.patch("sms.time.sleep") as sleep:
            result = send_bulk_sms(SMS, messages)
        assert result["sent"] == 12
        assert post.call_count == 12
        sleep.assert_called_once_with(1.0)

    def test_bulk_counts_failures(self):
        responses = [_response({}), _response({}, status=500), _response({})]
        with mock.patch("sms.requests.post", side_effect=responses):
            result = send_bulk_sms(SMS, [("09171234567", "a")] * 3, batch_delay=0)
        assert result["sent"] == 2
        assert result["failed"] == 1


# ---------------------------------------------------------------------------
# App & routes
# ---------------------------------------------------------------------------


class TestAppCreation:
    def test_create_app(self, app):
        assert app is not None

    def test_admin_user_created(self, app):
        with app.app_context():
            admin = User.query.filter_by(username="admin").first()
            assert admin is not None
            assert admin.role == "super_admin"

    def test_security_headers(self, client):
        response = client.get("/csrf-token")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestAuthRoutes:
    def test_login_success(self, client):
        response = client.post("/login", json={"username": "admin", "password": TEST_PASSWORD})
        assert response.status_code == 200
        assert response.get_json()["user"]["role"] == "super_admin"

    def test_login_failure(self, client):
        response = client.post("/login", json={"username": "admin", "password": "wrong"})
        assert response.status_code == 401

    def test_protected_route_requires_login(self, client):
        assert client.get("/api/customers").status_code == 401

    def test_logout(self, logged_in_client):
        assert logged_in_client.post("/logout").status_code == 200
        assert logged_in_client.get("/api/customers").status_code == 401


class TestCatalogRoutes:
    def test_create_plan(self, logged_in_client):
        response = logged_in_client.post("/api/plans", json={"name": "Plan 999", "monthly_fee": "999"})
        assert response.status_code == 201
        assert response.get_json()["plan"]["monthly_fee"] == "999.00"

    def test_create_plan_negative_fee(self, logged_in_client):
        response = logged_in_client.post("/api/plans", json={"name": "Bad", "monthly_fee": "-1"})
        assert response.status_code == 400
        assert response.get_json()["success"] is False

    def test_create_business_unit_invalid_anchor(self, logged_in_client):
        response = logged_in_client.post(
            "/api/business-units", json={"name": "Malanggam", "billing_anchor": "20th"}
        )
        assert response.status_code == 400


class TestCustomerRoutes:
    def test_create_customer(self, logged_in_client):
        response = logged_in_client.post(
            "/api/customers", json={"name": "Ana Garcia", "mobile_number": "09201234567"}
        )
        assert response.status_code == 201

    def test_create_customer_invalid_mobile(self, logged_in_client):
        response = logged_in_client.post(
            "/api/customers", json={"name": "Ana Garcia", "mobile_number": "12345"}
        )
        assert response.status_code == 400
        assert "09" in response.get_json()["error"]

    def test_create_subscription(self, logged_in_client, sample_data):
        response = logged_in_client.post("/api/subscriptions", json={
            "customer_id": sample_data["customer_id"],
            "plan_id": sample_data["plan_1500_id"],
            "business_unit_id": sample_data["unit_id"],
            "date_installed": "2025-12-01",
            "router_username": "juan.second",
        })
        assert response.status_code == 201
        data = response.get_json()["subscription"]
        assert data["billing_anchor"] == "15th"
        assert data["router_account"] == "juan.second"

    def test_unknown_subscription(self, logged_in_client, sample_data):
        assert logged_in_client.get("/api/subscriptions/9999").status_code == 404

    def test_plan_change_preview(self, logged_in_client, sample_data):
        response = logged_in_client.get(
            f"/api/subscriptions/{sample_data['subscription_id']}/plan-change/preview"
            f"?new_plan_id={sample_data['plan_1500_id']}&change_date=2025-12-10"
        )
        assert response.status_code == 200
        preview = response.get_json()["preview"]
        assert preview["net_amount"] == "83.33"
        assert preview["days_remaining"] == 5

    def test_plan_change(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            f"/api/subscriptions/{sample_data['subscription_id']}/plan-change",
            json={"new_plan_id": sample_data["plan_1500_id"], "change_date": "2025-12-10"},
        )
        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert data["prorated_invoice"]["amount_due"] == "83.33"

    def test_plan_change_same_plan(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            f"/api/subscriptions/{sample_data['subscription_id']}/plan-change",
            json={"new_plan_id": sample_data["plan_1000_id"], "change_date": "2025-12-10"},
        )
        assert response.status_code == 400
        assert response.get_json()["error_type"] == "validation_error"

    def test_plan_change_bad_date(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            f"/api/subscriptions/{sample_data['subscription_id']}/plan-change",
            json={"new_plan_id": sample_data["plan_1500_id"], "change_date": "10/12/2025"},
        )
        assert response.status_code == 400

    def test_disconnect(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            f"/api/subscriptions/{sample_data['subscription_id']}/disconnect",
            json={"disconnection_date": "2025-12-25"},
        )
        assert response.status_code == 200
        data = response.get_json()
        assert data["active"] is False
        assert data["invoice"]["amount_due"] == "322.58"


class TestInvoiceRoutes:
    def test_list_invoices_by_status(self, logged_in_client, sample_data):
        response = logged_in_client.get("/api/invoices?status=Unpaid")
        assert response.status_code == 200
        assert [i["id"] for i in response.get_json()] == [sample_data["invoice_id"]]

    def test_list_invoices_invalid_status(self, logged_in_client, sample_data):
        assert logged_in_client.get("/api/invoices?status=Lost").status_code == 400

    def test_invoice_document(self, logged_in_client, sample_data):
        response = logged_in_client.get(f"/api/invoices/{sample_data['invoice_id']}/document")
        assert response.status_code == 200
        assert response.mimetype == "text/html"
        html = response.get_data(as_text=True)
        assert sample_data["invoice_number"] == "INV2512-0001"
        assert sample_data["invoice_number"] in html
        assert "Juan Dela Cruz" in html

    def test_generate(self, logged_in_client, sample_data):
        response = logged_in_client.post("/api/invoices/generate", json={
            "business_unit_id": sample_data["unit_id"], "year": 2026, "month": 1, "send_sms": False,
        })
        assert response.status_code == 200
        assert response.get_json()["generated"] == 1


class TestPaymentRoutes:
    def test_pay_invoice(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            f"/api/invoices/{sample_data['invoice_id']}/payments",
            json={"amount": "1200", "mode": "Cash", "reference": "OR-1001"},
        )
        assert response.status_code == 201
        data = response.get_json()
        assert data["new_status"] == "Paid"
        assert data["balance_delta"] == "-200.00"

    def test_pay_invoice_replay(self, logged_in_client, sample_data):
        url = f"/api/invoices/{sample_data['invoice_id']}/payments"
        logged_in_client.post(url, json={"amount": "600", "reference": "OR-1002"})
        response = logged_in_client.post(url, json={"amount": "600", "reference": "OR-1002"})
        assert response.status_code == 200
        assert response.get_json()["applied"] is False

    def test_pay_invoice_zero(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            f"/api/invoices/{sample_data['invoice_id']}/payments", json={"amount": "0"}
        )
        assert response.status_code == 400

    def test_pay_unknown_invoice(self, logged_in_client, sample_data):
        response = logged_in_client.post("/api/invoices/9999/payments", json={"amount": "10"})
        assert response.status_code == 404

    def test_record_payment(self, logged_in_client, sample_data):
        response = logged_in_client.post("/api/payments", json={
            "subscription_id": sample_data["subscription_id"], "amount": "400",
        })
        assert response.status_code == 201
        assert response.get_json()["new_balance"] == "600.00"

    def test_payment_history(self, logged_in_client, sample_data):
        logged_in_client.post("/api/payments", json={
            "subscription_id": sample_data["subscription_id"], "amount": "400",
        })
        response = logged_in_client.get(f"/api/subscriptions/{sample_data['subscription_id']}/payments")
        assert response.status_code == 200
        assert response.get_json()[0]["amount"] == "400.00"

    def test_paymongo_payment_applied_once(self, logged_in_client, sample_data, app):
        app.config["PAYMONGO_CONFIG"] = PAYMONGO
        charge = {"id": "pay_abc", "status": "paid", "amount": D("1000.00")}
        body = {"invoice_id": sample_data["invoice_id"], "source_id": "src_1"}
        with mock.patch.object(PaymongoClient, "create_payment", return_value=charge):
            first = logged_in_client.post("/api/paymongo/create-payment", json=body)
            second = logged_in_client.post("/api/paymongo/create-payment", json=body)
        assert first.get_json()["new_status"] == "Paid"
        assert second.get_json()["applied"] is False
        with app.app_context():
            assert Payment.query.filter_by(reference="pay_abc").count() == 1
            assert _balance(sample_data["subscription_id"]) == D("0.00")

    def test_paymongo_disabled(self, logged_in_client, sample_data):
        response = logged_in_client.post(
            "/api/paymongo/create-source", json={"invoice_id": sample_data["invoice_id"]}
        )
        assert response.status_code == 400

    def test_paymongo_gateway_error(self, logged_in_client, sample_data, app):
        app.config["PAYMONGO_CONFIG"] = PAYMONGO
        with mock.patch.object(PaymongoClient, "create_source", side_effect=PaymongoError("down")):
            response = logged_in_client.post(
                "/api/paymongo/create-source", json={"invoice_id": sample_data["invoice_id"]}
            )
        assert response.status_code == 502


@pytest.fixture
def customer_client(app, sample_data):
    """Test client logged in as the sample customer's portal account."""
    with app.app_context():
        user = User(
            username="juan",
            password_hash=generate_password_hash(TEST_PASSWORD),
            role="customer",
            customer_id=sample_data["customer_id"],
        )
        db.session.add(user)
        db.session.commit()
        user_id = user.id
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
    return client


class TestPortalAndVerification:
    def _submit(self, customer_client, sample_data, reference="GC-7788"):
        return customer_client.post(
            f"/portal/subscriptions/{sample_data['subscription_id']}/payments",
            json={"amount": "1000", "wallet_provider": "GCash", "reference_number": reference},
        )

    def test_portal_overview(self, customer_client, sample_data):
        response = customer_client.get("/portal/")
        assert response.status_code == 200
        assert response.get_json()["subscriptions"][0]["id"] == sample_data["subscription_id"]

    def test_customer_cannot_see_staff_routes(self, customer_client, sample_data):
        assert customer_client.get("/api/customers").status_code == 403

    def test_customer_cannot_see_other_subscription(self, customer_client, sample_data, app):
        with app.app_context():
            other_id = _add_subscription(sample_data, datetime.date(2025, 12, 1))
        assert customer_client.get(f"/portal/subscriptions/{other_id}").status_code == 404

    def test_submit_then_approve(self, customer_client, logged_in_client, sample_data):
        response = self._submit(customer_client, sample_data)
        assert response.status_code == 201
        payment_id = response.get_json()["payment"]["id"]
        assert response.get_json()["payment"]["status"] == "Pending"

        pending = logged_in_client.get("/api/payments/pending").get_json()
        assert [p["id"] for p in pending] == [payment_id]

        approved = logged_in_client.post(f"/api/payments/{payment_id}/approve", json={})
        assert approved.status_code == 200
        assert approved.get_json()["new_status"] == "Paid"

        again = logged_in_client.post(f"/api/payments/{payment_id}/approve", json={})
        assert again.status_code == 400

    def test_submit_then_reject(self, customer_client, logged_in_client, sample_data):
        payment_id = self._submit(customer_client, sample_data).get_json()["payment"]["id"]
        response = logged_in_client.post(
            f"/api/payments/{payment_id}/reject", json={"reason": "No matching transfer"}
        )
        assert response.status_code == 200
        assert response.get_json()["new_status"] == "Unpaid"
        assert response.get_json()["new_balance"] == "1000.00"

    def test_collector_cannot_verify(self, app, client, customer_client, sample_data):
        payment_id = self._submit(customer_client, sample_data).get_json()["payment"]["id"]
        with app.app_context():
            collector = User(
                username="collector", password_hash=generate_password_hash(TEST_PASSWORD),
                role="collector",
            )
            db.session.add(collector)
            db.session.commit()
            collector_id = collector.id
        with client.session_transaction() as sess:
            sess["user_id"] = collector_id
        assert client.post(f"/api/payments/{payment_id}/approve", json={}).status_code == 403


class TestExpenseAndReportRoutes:
    def test_create_expense(self, logged_in_client, sample_data):
        response = logged_in_client.post("/api/expenses", json={
            "amount": "250", "quantity": 2, "reason": "Materials",
            "business_unit_id": sample_data["unit_id"], "expense_date": "2025-12-05",
        })
        assert response.status_code == 201

    def test_create_expense_invalid_reason(self, logged_in_client, sample_data):
        response = logged_in_client.post("/api/expenses", json={"amount": "250", "reason": "Snacks"})
        assert response.status_code == 400

    def test_dashboard(self, logged_in_client, sample_data):
        logged_in_client.post("/api/expenses", json={
            "amount": "250", "quantity": 2, "reason": "Materials",
            "business_unit_id": sample_data["unit_id"], "expense_date": "2025-12-05",
        })
        logged_in_client.post(f"/api/invoices/{sample_data['invoice_id']}/payments", json={
            "amount": "1000", "settlement_date": "2025-12-12",
        })
        response = logged_in_client.get(
            f"/api/dashboard?year=2025&month=12&business_unit_id={sample_data['unit_id']}"
        )
        assert response.status_code == 200
        data = response.get_json()
        assert data["collected"] == "1000.00"
        assert data["expenses"] == "500.00"
        assert data["net"] == "500.00"
        assert data["unpaid_invoices"] == 0
        assert data["active_subscriptions"] == 1

    def test_customer_report(self, logged_in_client, sample_data):
        response = logged_in_client.get(f"/api/reports/customers/{sample_data['customer_id']}")
        assert response.status_code == 200
        assert response.get_json()["subscriptions"][0]["balance"] == "1000.00"

    def test_audit_trail(self, logged_in_client, sample_data):
        created = logged_in_client.post(
            "/api/customers", json={"name": "Ana Garcia", "mobile_number": "09201234567"}
        ).get_json()["customer"]
        response = logged_in_client.get(f"/api/audit?entity_type=customer&entity_id={created['id']}")
        assert response.status_code == 200
        entries = response.get_json()
        assert [e["action"] for e in entries] == ["create"]
        assert entries[0]["user"] == "admin"

    def test_audit_trail_unknown_entity(self, logged_in_client):
        assert logged_in_client.get("/api/audit?entity_type=router").status_code == 400


class TestCronRoute:
    def test_requires_secret(self, client):
        assert client.get("/api/cron").status_code == 401

    def test_wrong_secret(self, client):
        response = client.get("/api/cron", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_runs_with_secret(self, client):
        response = client.get("/api/cron", headers={"Authorization": "Bearer cron-test-secret"})
        assert response.status_code == 200
        assert "tasks_executed" in response.get_json()

    def test_todays_tasks(self, client):
        response = client.get("/api/cron/tasks", headers={"Authorization": "Bearer cron-test-secret"})
        assert response.status_code == 200
        assert "generate_invoices" in response.get_json()
