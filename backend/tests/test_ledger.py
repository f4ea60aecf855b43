import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import (
    BankDetails,
    ConfirmPaymentRequest,
    PaymentIntentRequest,
    PaypalDetails,
    Principal,
    WithdrawalCreateRequest,
    WithdrawalStatusUpdateRequest,
)
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)

PROVIDER_EARNINGS = Decimal("92.09325")  # 85% of 108.345


@pytest.fixture
def pay_job(stores, make_closed_job):
    def _pay(client, provider, **overrides):
        job = make_closed_job(client, provider, **overrides)
        intent = stores.payments.create_intent(client, PaymentIntentRequest(job_id=job.id))
        stores.payments.confirm_payment(
            client, ConfirmPaymentRequest(job_id=job.id, payment_intent_id=intent.payment_intent_id)
        )
        return job

    return _pay


def _paypal(amount: str) -> WithdrawalCreateRequest:
    return WithdrawalCreateRequest(
        amount=Decimal(amount),
        withdrawal_method="paypal",
        paypal_details=PaypalDetails(email="pro@example.com"),
    )


def test_new_provider_has_empty_balance(stores, provider_user):
    balance = stores.ledger.get_balance(provider_user)
    assert balance.owner_id == provider_user.id
    assert balance.total_earnings == Decimal("0")
    assert balance.available_balance == Decimal("0")


def test_paid_closed_job_credits_provider(stores, client_user, provider_user, pay_job):
    pay_job(client_user, provider_user)
    balance = stores.ledger.get_balance(provider_user)
    assert balance.total_earnings == PROVIDER_EARNINGS
    assert balance.available_balance == PROVIDER_EARNINGS
    assert balance.pending_balance == Decimal("0")


def test_inspector_jobs_use_inspector_commission(stores, client_user, pay_job):
    inspector = Principal(id="inspector_1", role="inspector")
    pay_job(client_user, inspector, provider_type="inspector")
    assert stores.ledger.get_balance(inspector).total_earnings == Decimal("86.676")


def test_withdrawal_request_validation(stores, client_user, provider_user, pay_job):
    pay_job(client_user, provider_user)
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.request_withdrawal(provider_user, _paypal("5"))
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.request_withdrawal(provider_user, _paypal("500"))
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.request_withdrawal(
            provider_user, WithdrawalCreateRequest(amount=Decimal("20"), withdrawal_method="paypal")
        )
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.request_withdrawal(
            provider_user,
            WithdrawalCreateRequest(
                amount=Decimal("20"),
                withdrawal_method="bank_transfer",
                bank_details=BankDetails(account_number="123", bank_name="First"),
            ),
        )
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.request_withdrawal(
            provider_user, WithdrawalCreateRequest(amount=Decimal("20"), withdrawal_method="cheque")
        )
    with pytest.raises(MarketplaceAuthorizationError):
        stores.ledger.request_withdrawal(client_user, _paypal("20"))


def test_withdrawal_moves_funds_to_pending(stores, client_user, provider_user, pay_job):
    pay_job(client_user, provider_user)
    withdrawal = stores.ledger.request_withdrawal(provider_user, _paypal("50"))
    assert withdrawal.status == "pending"
    assert withdrawal.processing_fee == Decimal("0.5")
    assert withdrawal.net_amount == Decimal("49.5")
    assert withdrawal.paypal_details is not None

    balance = stores.ledger.get_balance(provider_user)
    assert balance.pending_balance == Decimal("50")
    assert balance.available_balance == PROVIDER_EARNINGS - Decimal("50")

    events_before = stores.ledger.balance_events(provider_user)
    with pytest.raises(MarketplaceConflictError):
        stores.ledger.request_withdrawal(provider_user, _paypal("10"))
    after = stores.ledger.get_balance(provider_user)
    assert (after.total_earnings, after.available_balance, after.pending_balance, after.total_withdrawn) == (
        balance.total_earnings,
        balance.available_balance,
        balance.pending_balance,
        balance.total_withdrawn,
    )
    assert stores.ledger.balance_events(provider_user) == events_before
    assert stores.ledger.list_withdrawals(provider_user).pagination.total == 1


def test_assignee_role_sets_commission_type(stores, client_user, pay_job):
    inspector = Principal(id="inspector_2", role="inspector")
    job = pay_job(client_user, inspector, provider_type="provider")
    with stores.db.transaction() as conn:
        assert stores.jobs.load_job(conn, job.id).provider_type == "inspector"
    assert stores.ledger.get_balance(inspector).total_earnings == Decimal("86.676")


def test_stripe_withdrawal_needs_no_details(stores, client_user, provider_user, pay_job):
    pay_job(client_user, provider_user)
    withdrawal = stores.ledger.request_withdrawal(
        provider_user, WithdrawalCreateRequest(amount=Decimal("40"), withdrawal_method="stripe")
    )
    assert withdrawal.processing_fee == Decimal("0.2")


def test_rejection_restores_available_balance(stores, client_user, provider_user, admin_user, pay_job):
    pay_job(client_user, provider_user)
    withdrawal = stores.ledger.request_withdrawal(provider_user, _paypal("50"))
    rejected = stores.ledger.update_withdrawal_status(
        admin_user, withdrawal.id, WithdrawalStatusUpdateRequest(status="rejected", admin_note="Details mismatch")
    )
    assert rejected.rejected_at is not None
    assert rejected.admin_notes[0].note == "Details mismatch"

    balance = stores.ledger.get_balance(provider_user)
    assert balance.available_balance == PROVIDER_EARNINGS
    assert balance.pending_balance == Decimal("0")


def test_completion_records_withdrawn_total(stores, client_user, provider_user, admin_user, pay_job):
    pay_job(client_user, provider_user)
    withdrawal = stores.ledger.request_withdrawal(provider_user, _paypal("50"))
    processing = stores.ledger.update_withdrawal_status(
        admin_user, withdrawal.id, WithdrawalStatusUpdateRequest(status="processing")
    )
    assert processing.processed_at is not None
    completed = stores.ledger.update_withdrawal_status(
        admin_user, withdrawal.id, WithdrawalStatusUpdateRequest(status="completed", transaction_id="tx_991")
    )
    assert completed.completed_at is not None
    assert completed.transaction_id == "tx_991"

    balance = stores.ledger.get_balance(provider_user)
    assert balance.total_withdrawn == Decimal("50")
    assert balance.pending_balance == Decimal("0")
    assert balance.available_balance == PROVIDER_EARNINGS - Decimal("50")
    assert balance.total_earnings == balance.available_balance + balance.pending_balance + balance.total_withdrawn

    with pytest.raises(MarketplaceConflictError):
        stores.ledger.update_withdrawal_status(
            admin_user, withdrawal.id, WithdrawalStatusUpdateRequest(status="processing")
        )


def test_only_admin_updates_withdrawals(stores, client_user, provider_user, pay_job):
    pay_job(client_user, provider_user)
    withdrawal = stores.ledger.request_withdrawal(provider_user, _paypal("50"))
    with pytest.raises(MarketplaceAuthorizationError):
        stores.ledger.update_withdrawal_status(
            provider_user, withdrawal.id, WithdrawalStatusUpdateRequest(status="completed")
        )
    with pytest.raises(MarketplaceNotFoundError):
        stores.ledger.update_withdrawal_status(
            Principal(id="admin_1", role="admin"), "wd_missing", WithdrawalStatusUpdateRequest(status="completed")
        )


def test_balance_events_and_history(stores, client_user, provider_user, admin_user, pay_job):
    job = pay_job(client_user, provider_user)
    withdrawal = stores.ledger.request_withdrawal(provider_user, _paypal("50"))
    stores.ledger.update_withdrawal_status(admin_user, withdrawal.id, WithdrawalStatusUpdateRequest(status="cancelled"))

    events = stores.ledger.balance_events(provider_user)
    assert [event.event_type for event in events][:2] == ["withdrawal_reversed", "withdrawal_requested"]
    assert events[0].available_balance == PROVIDER_EARNINGS

    history = stores.ledger.earnings_history(provider_user)
    assert history.pagination.total == 1
    assert history.items[0].job_id == job.id
    assert history.items[0].earnings == PROVIDER_EARNINGS


def test_balance_access_rules(stores, client_user, provider_user, admin_user):
    with pytest.raises(MarketplaceAuthorizationError):
        stores.ledger.get_balance(client_user)
    with pytest.raises(MarketplaceAuthorizationError):
        stores.ledger.get_balance(provider_user, owner_id="someone_else")
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.get_balance(admin_user)
    assert stores.ledger.get_balance(admin_user, owner_id=provider_user.id).owner_id == provider_user.id


def test_list_withdrawals_scoped_to_owner(stores, client_user, provider_user, admin_user, pay_job):
    pay_job(client_user, provider_user)
    stores.ledger.request_withdrawal(provider_user, _paypal("20"))
    other = Principal(id="provider_2", role="provider")
    assert stores.ledger.list_withdrawals(other).pagination.total == 0
    assert stores.ledger.list_withdrawals(provider_user).pagination.total == 1
    assert stores.ledger.list_withdrawals(admin_user, status="pending").pagination.total == 1
    with pytest.raises(MarketplaceAuthorizationError):
        stores.ledger.list_withdrawals(client_user)
