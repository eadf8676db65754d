# models.py
from typing import Any, Dict, Optional
from datetime import date, datetime
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_TERMINAL = {PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED}

MEMBERSHIP_ACTIVE = "active"
MEMBERSHIP_EXPIRED = "expired"


class Payment(SQLModel, table=True):
  __tablename__ = "payments"

  id: Optional[int] = Field(default=None, primary_key=True)
  member_id: Optional[str] = Field(default=None, index=True)  # null for walk-ins
  amount: int  # KES, from the plan catalog
  plan_type: str
  phone_number: str
  status: str = Field(default=PAYMENT_PENDING, index=True)  # pending|completed|failed|cancelled
  is_walkin: bool = False
  walkin_name: Optional[str] = None

  checkout_request_id: Optional[str] = Field(default=None, unique=True, index=True)
  merchant_request_id: Optional[str] = None
  receipt_number: Optional[str] = None
  transaction_date: Optional[str] = None  # provider YYYYMMDDHHMMSS
  confirmed_amount: Optional[int] = None
  amount_verified: bool = False
  verified_at: Optional[datetime] = None
  failure_reason: Optional[str] = None

  created_at: datetime = Field(default_factory=datetime.utcnow)
  updated_at: datetime = Field(default_factory=datetime.utcnow)


class Membership(SQLModel, table=True):
  __tablename__ = "memberships"

  id: Optional[int] = Field(default=None, primary_key=True)
  member_id: str = Field(index=True)
  plan_type: str
  start_date: date
  expiry_date: date = Field(index=True)
  status: str = Field(default=MEMBERSHIP_ACTIVE, index=True)  # active|expired
  payment_id: Optional[int] = Field(default=None, foreign_key="payments.id")

  next_plan_type: Optional[str] = None
  next_plan_paid: bool = False
  next_plan_payment_id: Optional[int] = Field(default=None, foreign_key="payments.id", index=True)

  created_at: datetime = Field(default_factory=datetime.utcnow)
  updated_at: datetime = Field(default_factory=datetime.utcnow)


class SecurityLog(SQLModel, table=True):
  __tablename__ = "security_logs"

  id: Optional[int] = Field(default=None, primary_key=True)
  event_type: str = Field(index=True)
  member_id: Optional[str] = None
  ip_address: Optional[str] = None
  details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
  created_at: datetime = Field(default_factory=datetime.utcnow)
