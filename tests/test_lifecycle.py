from datetime import timedelta

from conftest import FIXED_NOW, OTHER_USER_ID, USER_EMAIL, USER_ID
from subscription_engine.auth import AuthenticatedCaller
from subscription_engine.exceptions import GatewayError, GatewayTimeoutError
from subscription_engine.lifecycle import (
    STATUS_ALREADY_APPLIED,
    STATUS_APPLIED,
    STATUS_DUPLICATE,
    STATUS_IGNORED,
    STATUS_REJECTED,
    STATUS_UNVERIFIED,
    STATUS_USER_NOT_FOUND,
    TRIAL_CANCELLED,
    TRIAL_CONVERTED,
    TRIAL_EXPIRED,
    TRIAL_SKIPPED,
    TRIAL_UNKNOWN,
)


def _charge_event(reference, event="charge.success", email=USER_EMAIL, **extra):
    data = {"reference": reference, "amount": 15999, "customer": {"email": email}}
    data.update(extra)
    return {"event": event, "data": data}


def test_first_payment_creates_records_from_metadata(services, store, paystack):
    paystack.add_transaction("sub_webhooknewuser1")
    event = _charge_event("sub_webhooknewuser1", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})

    outcome = services.lifecycle.handle_webhook_event(event)

    assert outcome.processed
    assert outcome.status == STATUS_APPLIED
    assert outcome.operation == "subscription_creation"
    account = store.get_account(USER_ID)
    subscription = store.get_subscription(USER_ID)
    assert account["plan"] == "premium"
    assert account["subscription_status"] == "active"
    assert account["email"] == USER_EMAIL
    assert account["customer_code"] == "CUS_test001"
    assert account["subscription_end"] == FIXED_NOW + timedelta(days=30)
    assert subscription["reference"] == "sub_webhooknewuser1"
    assert subscription["authorization_code"] == "AUTH_test001"
    assert subscription["amount"] == 15999


def test_redelivered_charge_is_acknowledged_once(services, store, paystack):
    paystack.add_transaction("sub_webhooknewuser1")
    event = _charge_event("sub_webhooknewuser1", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})
    services.lifecycle.handle_webhook_event(event)
    version = store.get_subscription(USER_ID)["version"]

    outcome = services.lifecycle.handle_webhook_event(event)

    assert not outcome.processed
    assert outcome.status == STATUS_DUPLICATE
    assert outcome.user_id == USER_ID
    assert paystack.verify_calls == ["sub_webhooknewuser1"]
    assert store.get_subscription(USER_ID)["version"] == version
    assert len(store.audit_entries(USER_ID, "atomic_subscription_creation")) == 1


def test_callback_after_webhook_is_already_applied(services, paystack):
    paystack.add_transaction("sub_webhooknewuser1")
    services.lifecycle.handle_webhook_event(
        _charge_event("sub_webhooknewuser1", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})
    )

    mine = services.lifecycle.verify_callback(USER_ID, USER_EMAIL, "sub_webhooknewuser1", "MONTHLY_PLAN")
    theirs = services.lifecycle.verify_callback(OTHER_USER_ID, "sipho@example.com", "sub_webhooknewuser1", "MONTHLY_PLAN")

    assert mine.status == STATUS_ALREADY_APPLIED
    assert mine.subscription["status"] == "active"
    assert theirs.status == STATUS_DUPLICATE


def test_renewal_extends_from_current_end(services, store, paystack, active_user):
    paystack.add_transaction("sub_renewalcharge1")

    outcome = services.lifecycle.handle_webhook_event(_charge_event("sub_renewalcharge1"))

    assert outcome.operation == "subscription_renewal"
    account = store.get_account(USER_ID)
    assert account["subscription_end"] == FIXED_NOW + timedelta(days=60)
    assert account["subscription_start"] == FIXED_NOW
    assert store.get_subscription(USER_ID)["reference"] == "sub_renewalcharge1"


def test_webhook_resolves_user_by_email_before_metadata(services, store, paystack, active_user):
    paystack.add_transaction("sub_renewalcharge2", metadata={"userId": OTHER_USER_ID, "planId": "MONTHLY_PLAN"})

    outcome = services.lifecycle.handle_webhook_event(
        _charge_event("sub_renewalcharge2", email="THANDI@example.com", metadata={"userId": OTHER_USER_ID})
    )

    assert outcome.user_id == USER_ID
    assert store.get_account(OTHER_USER_ID) is None


def test_unknown_customer_without_metadata(services, store, paystack):
    paystack.add_transaction("sub_orphancharge01")

    outcome = services.lifecycle.handle_webhook_event(_charge_event("sub_orphancharge01", email="nobody@example.com"))

    assert outcome.status == STATUS_USER_NOT_FOUND
    assert len(store.audit_entries(event_type="webhook_user_not_found")) == 1


def test_trial_setup_then_conversion(services, store, paystack):
    paystack.add_transaction(
        "trial_setup000001",
        amount=100,
        metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN", "isTrialSetup": True},
    )

    trial = services.lifecycle.verify_callback(USER_ID, USER_EMAIL, "trial_setup000001", "MONTHLY_PLAN")

    assert trial.status == STATUS_APPLIED
    assert trial.operation == "trial_creation"
    assert trial.account["subscription_status"] == "trial"
    assert trial.account["trial_end_date"] == FIXED_NOW + timedelta(days=7)
    assert trial.subscription["status"] == "trial"
    assert trial.subscription["amount"] == 15999

    paystack.add_transaction("sub_trialconvert01")
    converted = services.lifecycle.handle_webhook_event(_charge_event("sub_trialconvert01"))

    assert converted.operation == "trial_conversion"
    account = store.get_account(USER_ID)
    assert account["subscription_status"] == "active"
    assert account["trial_end_date"] == FIXED_NOW
    assert store.get_subscription(USER_ID)["status"] == "active"


def test_full_price_charge_on_trial_reference_is_rejected(services, store, paystack):
    paystack.add_transaction("trial_setup000002")

    result = services.lifecycle.verify_callback(USER_ID, USER_EMAIL, "trial_setup000002", "MONTHLY_PLAN")

    assert result.status == STATUS_REJECTED
    assert store.get_subscription(USER_ID) is None


def test_callback_for_another_users_transaction_is_rejected(services, store, paystack):
    paystack.add_transaction("sub_someoneelse001", metadata={"userId": OTHER_USER_ID, "planId": "MONTHLY_PLAN"})

    result = services.lifecycle.verify_callback(USER_ID, USER_EMAIL, "sub_someoneelse001", "MONTHLY_PLAN")

    assert result.status == STATUS_REJECTED
    assert store.get_account(USER_ID) is None


def test_gateway_down_leaves_event_unapplied_and_queued(services, store, paystack):
    paystack.errors["sub_gatewaydown001"] = GatewayTimeoutError("Paystack request timed out")
    event = _charge_event("sub_gatewaydown001", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})

    outcome = services.lifecycle.handle_webhook_event(event)

    assert not outcome.processed
    assert outcome.status == STATUS_UNVERIFIED
    assert outcome.queued
    assert store.get_account(USER_ID) is None

    [entry] = store.audit_entries(event_type="webhook_unverified")
    assert entry["user_id"] == USER_ID
    assert entry["reference"] == "sub_gatewaydown001"
    assert entry["event_data"]["event"] == "charge.success"
    assert entry["event_data"]["error_code"] == "VERIFICATION_SYSTEM_ERROR"
    assert entry["event_data"]["payload"]["data"]["metadata"] == {"userId": USER_ID, "planId": "MONTHLY_PLAN"}


def test_unverified_event_is_applied_when_reprocessed(services, store, paystack):
    paystack.errors["sub_gatewaydown001"] = GatewayTimeoutError("Paystack request timed out")
    event = _charge_event("sub_gatewaydown001", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})
    services.lifecycle.handle_webhook_event(event)
    del paystack.errors["sub_gatewaydown001"]
    paystack.add_transaction("sub_gatewaydown001")

    [entry] = services.lifecycle.pending_unverified_events()
    outcome = services.lifecycle.reprocess_unverified(entry)

    assert outcome.status == STATUS_APPLIED
    assert outcome.operation == "subscription_creation"
    assert store.get_account(USER_ID)["subscription_status"] == "active"
    assert services.lifecycle.pending_unverified_events() == []
    [resolved] = store.audit_entries(USER_ID, "webhook_reprocessed")
    assert resolved["event_data"]["unverified_entry_id"] == entry["id"]
    assert services.lifecycle.handle_webhook_event(event).status == STATUS_DUPLICATE


def test_still_unverified_event_stays_pending(services, store, paystack):
    paystack.errors["sub_gatewaydown001"] = GatewayTimeoutError("Paystack request timed out")
    services.lifecycle.handle_webhook_event(
        _charge_event("sub_gatewaydown001", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})
    )
    [entry] = services.lifecycle.pending_unverified_events()

    outcome = services.lifecycle.reprocess_unverified(entry)

    assert outcome.status == STATUS_UNVERIFIED
    assert services.lifecycle.pending_unverified_events() == [entry]
    assert len(store.audit_entries(event_type="webhook_unverified")) == 1


def test_duplicate_check_failure_fails_closed(services, store, paystack, monkeypatch):
    def broken(reference):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "find_applied_reference", broken)
    paystack.add_transaction("sub_dupcheckdown01")
    event = _charge_event("sub_dupcheckdown01", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})

    outcome = services.lifecycle.handle_webhook_event(event)

    assert outcome.status == STATUS_UNVERIFIED
    assert outcome.reason == "DUPLICATE_CHECK_ERROR"
    assert paystack.verify_calls == []
    assert store.get_account(USER_ID) is None
    [entry] = store.audit_entries(event_type="webhook_unverified")
    assert entry["event_data"]["error_code"] == "DUPLICATE_CHECK_ERROR"


def test_amount_mismatch_is_rejected_and_audited(services, store, paystack, active_user):
    paystack.add_transaction("sub_underpayment01", amount=9999)

    outcome = services.lifecycle.handle_webhook_event(_charge_event("sub_underpayment01"))

    assert outcome.status == STATUS_REJECTED
    failed = store.audit_entries(USER_ID, "payment_verification_failed")
    assert failed[-1]["event_data"]["source"] == "webhook"
    assert store.get_subscription(USER_ID)["reference"] == "sub_initialpayment01"


def test_concurrent_write_during_verification_is_not_applied(services, store, updater, paystack, monkeypatch):
    paystack.add_transaction("sub_racingcharge01")
    original = services.verifier.verify_transaction

    def verify_while_callback_lands(*args, **kwargs):
        updater.apply_update(USER_ID, account_delta={"email": USER_EMAIL, "plan": "free"})
        return original(*args, **kwargs)

    monkeypatch.setattr(services.verifier, "verify_transaction", verify_while_callback_lands)
    event = _charge_event("sub_racingcharge01", metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN"})

    outcome = services.lifecycle.handle_webhook_event(event)

    assert outcome.status == "failed"
    assert store.get_subscription(USER_ID) is None
    assert store.find_applied_reference("sub_racingcharge01") is None


def test_charge_failed_opens_single_episode(services, store, active_user):
    event = _charge_event("sub_failedcharge01", event="charge.failed", gateway_response="Insufficient Funds")

    first = services.lifecycle.handle_webhook_event(event)
    second = services.lifecycle.handle_webhook_event(event)

    assert first.status == STATUS_APPLIED
    assert second.status == STATUS_DUPLICATE
    subscription = store.get_subscription(USER_ID)
    assert subscription["status"] == "payment_failed"
    assert subscription["payment_retry"]["retry_attempts"] == 0
    assert store.get_account(USER_ID)["payment_failure_count"] == 1
    assert len(store.audit_entries(USER_ID, "payment_failure_duplicate")) == 1


def test_successful_charge_during_retry_closes_episode(services, store, paystack, active_user):
    services.scheduler.record_failure(USER_ID, error="Insufficient Funds")
    paystack.add_transaction("sub_updatedcard001")

    outcome = services.lifecycle.handle_webhook_event(_charge_event("sub_updatedcard001"))

    assert outcome.operation == "payment_retry_success"
    subscription = store.get_subscription(USER_ID)
    assert subscription["status"] == "active"
    assert subscription["payment_retry"] is None


def test_charge_failed_for_cancelled_subscription_is_ignored(services, store, active_user):
    services.lifecycle.cancel(USER_ID)

    outcome = services.lifecycle.handle_webhook_event(_charge_event("sub_failedcharge02", event="charge.failed"))

    assert outcome.status == STATUS_IGNORED


def test_subscription_create_links_gateway_codes(services, store, active_user):
    event = {
        "event": "subscription.create",
        "data": {
            "id": 9001,
            "subscription_code": "SUB_test001",
            "email_token": "tok_test001",
            "next_payment_date": "2025-03-31T12:00:00.000Z",
            "customer": {"email": USER_EMAIL, "customer_code": "CUS_test001"},
        },
    }

    outcome = services.lifecycle.handle_webhook_event(event)

    assert outcome.status == STATUS_APPLIED
    account = store.get_account(USER_ID)
    subscription = store.get_subscription(USER_ID)
    assert account["subscription_code"] == "SUB_test001"
    assert account["external_subscription_id"] == "9001"
    assert subscription["email_token"] == "tok_test001"
    assert subscription["status"] == "active"


def test_disable_event_cancels_once(services, store, active_user):
    event = {"event": "subscription.disable", "data": {"customer": {"email": USER_EMAIL}}}

    first = services.lifecycle.handle_webhook_event(event)
    second = services.lifecycle.handle_webhook_event(event)

    assert first.status == STATUS_APPLIED
    assert second.status == STATUS_DUPLICATE
    account = store.get_account(USER_ID)
    assert account["plan"] == "free"
    assert account["subscription_status"] == "cancelled"
    assert store.get_subscription(USER_ID)["cancellation_reason"] == "subscription.disable"


def test_unpaid_invoice_is_ignored(services):
    outcome = services.lifecycle.handle_webhook_event({"event": "invoice.create", "data": {"paid": False}})

    assert outcome.status == STATUS_IGNORED


def test_cancel_disables_gateway_subscription(services, store, paystack, active_user):
    services.updater.apply_update(
        USER_ID,
        subscription_delta={"subscription_code": "SUB_test001", "email_token": "tok_test001"},
    )

    result = services.lifecycle.cancel(USER_ID, reason="too_expensive")

    assert result.cancelled
    assert result.gateway_disabled is True
    assert paystack.disabled == [("SUB_test001", "tok_test001")]
    subscription = store.get_subscription(USER_ID)
    assert subscription["status"] == "cancelled"
    assert subscription["cancellation_reason"] == "too_expensive"
    assert subscription["cancellation_date"] == FIXED_NOW
    assert store.get_account(USER_ID)["plan"] == "free"

    again = services.lifecycle.cancel(USER_ID)
    assert not again.cancelled


def test_cancel_during_retry_clears_episode(services, store, active_user):
    services.scheduler.record_failure(USER_ID, error="Insufficient Funds")

    assert services.lifecycle.cancel(USER_ID, reason="grace_period_expired").cancelled

    subscription = store.get_subscription(USER_ID)
    assert subscription["payment_retry"] is None
    assert services.scheduler.due_retries(FIXED_NOW + timedelta(days=30)) == []


def test_initialize_subscription(services, store, paystack):
    caller = AuthenticatedCaller(uid=USER_ID, email=USER_EMAIL)
    validation = services.request_validator.validate(caller, {"planId": "MONTHLY_PLAN", "metadata": {"source": "web"}})

    result = services.lifecycle.initialize_subscription(validation)

    assert result.reference.startswith("sub_")
    assert result.amount == 15999
    sent = paystack.initialized[0]
    assert sent["plan"] == "PLN_monthly"
    assert sent["metadata"] == {"source": "web", "userId": USER_ID, "planId": "MONTHLY_PLAN", "isTrialSetup": False}
    assert sent["callback_url"].endswith("/subscription/callback")
    assert store.audit_entries(USER_ID, "subscription_initialized")[0]["event_data"]["initialized_reference"] == (
        result.reference
    )


def test_initialize_trial(services, paystack):
    caller = AuthenticatedCaller(uid=USER_ID, email=USER_EMAIL)
    validation = services.request_validator.validate(caller, {"planId": "ANNUAL_PLAN"})

    result = services.lifecycle.initialize_subscription(validation, trial=True)

    assert result.is_trial
    assert result.reference.startswith("trial_")
    assert result.amount == 100
    assert paystack.initialized[0]["plan"] is None


def _start_trial(services, paystack, subscription_code=None):
    paystack.add_transaction(
        "trial_setupcharge01",
        amount=100,
        metadata={"userId": USER_ID, "planId": "MONTHLY_PLAN", "isTrialSetup": True},
    )
    result = services.lifecycle.verify_callback(USER_ID, USER_EMAIL, "trial_setupcharge01", "MONTHLY_PLAN")
    assert result.status == STATUS_APPLIED
    if subscription_code:
        services.updater.apply_update(
            USER_ID,
            {"subscription_code": subscription_code},
            {"subscription_code": subscription_code},
            "subscription_linked",
        )


def test_trials_are_listed_once_their_end_date_passes(services, paystack, clock):
    _start_trial(services, paystack)

    clock.advance(days=6)
    assert services.lifecycle.expired_trials() == []
    clock.advance(days=1)
    assert services.lifecycle.expired_trials() == [USER_ID]


def test_ended_trial_without_gateway_subscription_expires(services, store, paystack, clock):
    _start_trial(services, paystack)
    clock.advance(days=8)

    assert services.lifecycle.expire_trial(USER_ID) == TRIAL_EXPIRED

    account = store.get_account(USER_ID)
    subscription = store.get_subscription(USER_ID)
    assert account["plan"] == "free"
    assert account["subscription_status"] == "expired"
    assert subscription["status"] == "expired"
    assert subscription["cancellation_reason"] == "trial_expired"
    assert paystack.fetched == []
    assert len(store.audit_entries(USER_ID, "atomic_trial_expiration")) == 1
    assert services.lifecycle.expired_trials() == []


def test_ended_trial_with_active_gateway_subscription_converts(services, store, paystack, clock):
    _start_trial(services, paystack, subscription_code="SUB_trialcode001")
    paystack.subscription_statuses["SUB_trialcode001"] = "active"
    clock.advance(days=8)

    assert services.lifecycle.expire_trial(USER_ID) == TRIAL_CONVERTED

    account = store.get_account(USER_ID)
    assert account["plan"] == "premium"
    assert account["subscription_status"] == "active"
    assert account["subscription_end"] == clock() + timedelta(days=30)
    assert store.get_subscription(USER_ID)["status"] == "active"
    assert paystack.fetched == ["SUB_trialcode001"]
    assert services.consistency.check_consistency(USER_ID).is_consistent


def test_ended_trial_cancelled_at_gateway_is_cancelled(services, store, paystack, clock):
    _start_trial(services, paystack, subscription_code="SUB_trialcode001")
    paystack.subscription_statuses["SUB_trialcode001"] = "cancelled"
    clock.advance(days=8)

    assert services.lifecycle.expire_trial(USER_ID) == TRIAL_CANCELLED

    account = store.get_account(USER_ID)
    assert account["plan"] == "free"
    assert account["subscription_status"] == "cancelled"
    assert store.get_subscription(USER_ID)["cancellation_reason"] == "paystack_subscription_cancelled"


def test_ended_trial_is_left_alone_when_gateway_is_down(services, store, paystack, clock):
    _start_trial(services, paystack, subscription_code="SUB_trialcode001")
    paystack.errors["SUB_trialcode001"] = GatewayError("Paystack returned HTTP 503", status_code=503)
    clock.advance(days=8)
    version = store.get_subscription(USER_ID)["version"]

    assert services.lifecycle.expire_trial(USER_ID) == TRIAL_UNKNOWN

    assert store.get_account(USER_ID)["subscription_status"] == "trial"
    assert store.get_subscription(USER_ID)["version"] == version
    assert len(store.audit_entries(USER_ID, "trial_expiration_unverified")) == 1
    assert services.lifecycle.expired_trials() == [USER_ID]


def test_expire_trial_skips_paid_subscriptions(services, active_user):
    assert services.lifecycle.expire_trial(USER_ID) == TRIAL_SKIPPED
