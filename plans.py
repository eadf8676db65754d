# plans.py
from datetime import date, timedelta
from typing import Dict

from pydantic import BaseModel

from errors import ValidationError


class Plan(BaseModel):
  id: str
  name: str
  price: int  # KES
  days: int


PLANS: Dict[str, Plan] = {
  p.id: p
  for p in [
    Plan(id="day", name="Day Pass", price=500, days=1),
    Plan(id="week", name="1 Week", price=2000, days=7),
    Plan(id="month", name="1 Month", price=5500, days=30),
    Plan(id="quarterly", name="Quarterly", price=15000, days=90),
    Plan(id="semi_annual", name="Semi-Annual", price=30000, days=180),
    Plan(id="annual", name="Annual", price=54000, days=365),
  ]
}


def validate_plan_type(plan_type: str) -> str:
  key = (plan_type or "").strip().lower()
  if key not in PLANS:
    raise ValidationError(f"Unknown plan type '{plan_type}'. Choose one of: {', '.join(PLANS)}")
  return key


def get_plan(plan_type: str) -> Plan:
  return PLANS[validate_plan_type(plan_type)]


def plan_price(plan_type: str) -> int:
  return get_plan(plan_type).price


def plan_days(plan_type: str) -> int:
  return get_plan(plan_type).days


def expiry_for(start: date, plan_type: str) -> date:
  return start + timedelta(days=plan_days(plan_type))
