from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from subscription_engine.database import Base


class Account(Base):
    """Coarse-grained plan/status used for access control."""

    __tablename__ = "accounts"

    user_id = Column(String(128), primary_key=True)
    email = Column(String, nullable=True, index=True)
    plan = Column(String(32), nullable=False, default="free")
    subscription_status = Column(String(32), nullable=False, default="inactive")
    subscription_plan = Column(String(64), nullable=True)
    subscription_reference = Column(String(128), nullable=True)
    customer_code = Column(String(128), nullable=True)
    subscription_code = Column(String(128), nullable=True, index=True)
    external_subscription_id = Column(String(128), nullable=True)
    subscription_start = Column(DateTime, nullable=True)
    subscription_end = Column(DateTime, nullable=True)
    trial_start_date = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)
    cancellation_date = Column(DateTime, nullable=True)
    payment_failure_count = Column(Integer, nullable=False, default=0)
    last_payment_failure = Column(DateTime, nullable=True)
    extra = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    last_updated = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Subscription(Base):
    """Per-user billing detail; 1:1 with Account."""

    __tablename__ = "subscriptions"

    user_id = Column(String(128), primary_key=True)
    plan_id = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False, default="inactive")
    reference = Column(String(128), nullable=True, index=True)
    amount = Column(Integer, nullable=True)  # minor units
    currency = Column(String(3), nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    customer_code = Column(String(128), nullable=True)
    subscription_code = Column(String(128), nullable=True)
    external_subscription_id = Column(String(128), nullable=True)
    authorization_code = Column(String(128), nullable=True)
    trial_start_date = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)
    cancellation_date = Column(DateTime, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)
    provider_payload = Column(JSON, nullable=True)
    payment_retry = Column(JSON, nullable=True)
    extra = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    last_updated = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class AuditLogEntry(Base):
    """Append-only history. Rows are never updated or deleted."""

    __tablename__ = "subscription_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=True, index=True)
    event_type = Column(String(128), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    reference = Column(String(128), nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False)
