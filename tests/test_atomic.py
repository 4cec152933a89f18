import pytest

from conftest import FIXED_NOW, USER_ID
from subscription_engine import models
from subscription_engine.atomic import OP_PAYMENT_FAILURE, OP_SUBSCRIPTION_CANCELLATION
from subscription_engine.exceptions import AtomicUpdateError, ConcurrentUpdateError, InvalidTransitionError


def _create(updater, user_id=USER_ID, reference="sub_atomiccreate01"):
    return updater.create_subscription(
        user_id,
        {
            "email": "thandi@example.com",
            "plan": "premium",
            "subscription_status": "active",
            "subscription_plan": "MONTHLY_PLAN",
            "subscription_reference": reference,
        },
        {"plan_id": "MONTHLY_PLAN", "status": "active", "reference": reference, "amount": 15999},
    )


def test_creation_writes_both_records_and_one_audit_entry(updater, store):
    assert _create(updater) is True

    account = store.get_account(USER_ID)
    subscription = store.get_subscription(USER_ID)
    assert account["plan"] == "premium"
    assert account["subscription_status"] == "active"
    assert account["created_at"] == FIXED_NOW
    assert subscription["status"] == "active"
    assert subscription["amount"] == 15999
    assert account["version"] == 1 and subscription["version"] == 1

    entries = store.audit_entries(USER_ID)
    assert [entry["event_type"] for entry in entries] == ["atomic_subscription_creation"]
    assert entries[0]["reference"] == "sub_atomiccreate01"
    assert entries[0]["event_data"]["before"]["subscription_status"] is None


def test_failure_mid_batch_leaves_no_partial_write(updater, store, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(updater, "_merge_subscription", explode)

    with pytest.raises(AtomicUpdateError) as excinfo:
        _create(updater)

    assert "disk full" in str(excinfo.value)
    assert store.get_account(USER_ID) is None
    assert store.get_subscription(USER_ID) is None
    assert [entry["event_type"] for entry in store.audit_entries(USER_ID)] == [
        "atomic_subscription_creation_failed"
    ]


def test_stale_expected_version_is_rejected(updater, store):
    _create(updater)

    with pytest.raises(ConcurrentUpdateError):
        updater.apply_update(
            USER_ID,
            account_delta={"subscription_status": "cancelled", "plan": "free"},
            operation=OP_SUBSCRIPTION_CANCELLATION,
            expected_versions={"account": 0},
        )

    assert store.get_account(USER_ID)["subscription_status"] == "active"
    assert store.get_account(USER_ID)["version"] == 1


def test_concurrent_writer_detected_at_flush(updater, store, session_factory, monkeypatch):
    _create(updater)
    original_merge = updater._merge_account

    def merge_after_competing_write(session, user_id, account, delta, now):
        # Another writer commits between our read and our flush.
        other = session_factory()
        competing = other.get(models.Account, user_id)
        competing.payment_failure_count = 5
        other.commit()
        other.close()
        return original_merge(session, user_id, account, delta, now)

    monkeypatch.setattr(updater, "_merge_account", merge_after_competing_write)

    with pytest.raises(ConcurrentUpdateError):
        updater.apply_update(USER_ID, account_delta={"subscription_status": "cancelled"}, operation="update")

    assert store.get_account(USER_ID)["payment_failure_count"] == 5


def test_disallowed_transition_is_refused(updater, store):
    _create(updater)
    updater.cancel_subscription(USER_ID, {"plan": "free", "subscription_status": "cancelled"}, {"status": "cancelled"})

    with pytest.raises(AtomicUpdateError) as excinfo:
        updater.record_payment_failure(USER_ID, {"subscription_status": "payment_failed"})

    assert isinstance(excinfo.value.__cause__, InvalidTransitionError)
    assert store.get_subscription(USER_ID)["status"] == "cancelled"


def test_unknown_status_value_is_refused(updater, store):
    with pytest.raises(AtomicUpdateError):
        updater.apply_update(USER_ID, account_delta={"subscription_status": "sort_of_active"})

    assert store.get_account(USER_ID) is None


def test_input_validation(updater):
    with pytest.raises(AtomicUpdateError):
        updater.apply_update(USER_ID)
    with pytest.raises(AtomicUpdateError):
        updater.apply_update("  ", account_delta={"plan": "free"})


def test_unmodelled_fields_are_kept(updater, store):
    _create(updater)
    updater.apply_update(USER_ID, subscription_delta={"email_token": "tok_123", "next_payment_date": "2025-04-01"})

    subscription = store.get_subscription(USER_ID)
    assert subscription["email_token"] == "tok_123"
    assert subscription["next_payment_date"] == "2025-04-01"
    assert subscription["plan_id"] == "MONTHLY_PLAN"


def test_payment_failure_synthesizes_retry_state(updater, store, settings):
    _create(updater)

    updater.record_payment_failure(USER_ID, {"subscription_status": "payment_failed"})

    retry = store.get_subscription(USER_ID)["payment_retry"]
    assert retry == {
        "retry_attempts": 0,
        "max_retries": 3,
        "next_retry_date": (FIXED_NOW + settings.retry_interval).isoformat(),
        "grace_period_end": (FIXED_NOW + settings.grace_period).isoformat(),
        "status": "retry_scheduled",
        "retry_history": [],
    }
    assert store.get_subscription(USER_ID)["status"] == "payment_failed"


def test_second_payment_failure_cannot_reset_episode(updater, store):
    _create(updater)
    updater.record_payment_failure(USER_ID, {"subscription_status": "payment_failed"})
    updater.apply_update(USER_ID, subscription_delta={"retry_attempt": 1}, operation="payment_retry_failed")

    with pytest.raises(AtomicUpdateError):
        updater.apply_update(
            USER_ID,
            subscription_delta={"status": "retry_scheduled"},
            operation=OP_PAYMENT_FAILURE,
        )

    assert store.get_subscription(USER_ID)["payment_retry"]["retry_attempts"] == 1


def test_retry_success_clears_retry_state(updater, store):
    _create(updater)
    updater.record_payment_failure(USER_ID, {"subscription_status": "payment_failed"})

    updater.apply_update(
        USER_ID,
        {"subscription_status": "active"},
        {"last_payment_date": FIXED_NOW},
        "payment_retry_success",
    )

    subscription = store.get_subscription(USER_ID)
    assert subscription["payment_retry"] is None
    assert subscription["status"] == "active"
    assert subscription["last_payment_date"] == FIXED_NOW


def test_trial_wrappers_record_their_operation(updater, store):
    updater.create_trial(
        USER_ID,
        {"plan": "premium", "subscription_status": "trial"},
        {"plan_id": "MONTHLY_PLAN", "status": "trial", "reference": "trial_atomicsetup1"},
    )
    updater.convert_trial(
        USER_ID,
        {"subscription_status": "active"},
        {"status": "active", "reference": "sub_atomicconvert1"},
    )

    assert [entry["event_type"] for entry in store.audit_entries(USER_ID)] == [
        "atomic_trial_creation",
        "atomic_trial_conversion",
    ]
    assert store.get_subscription(USER_ID)["status"] == "active"
