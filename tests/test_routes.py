from datetime import date, timedelta

from sqlmodel import select

from models import Membership, Payment, SecurityLog


def test_health(client):
  r = client.get("/health")
  assert r.status_code == 200
  assert r.json()["ok"] is True


def test_plans_listed(client):
  r = client.get("/api/plans")
  assert r.status_code == 200
  assert {"id": "month", "name": "1 Month", "price": 5500, "days": 30} in r.json()


def test_initiate_requires_session(client):
  r = client.post("/api/payments/initiate", json={"phone": "0712345678", "plan_type": "month"})
  assert r.status_code == 401
  assert r.json()["error"]["code"] == "UNAUTHORIZED"


def test_member_initiates_for_self(client, member_headers, gateway, session):
  r = client.post(
    "/api/payments/initiate",
    headers=member_headers,
    json={"member_id": "someone-else", "phone": "0712345678", "plan_type": "month", "amount": 10},
  )
  assert r.status_code == 200
  data = r.json()
  assert data["amount"] == 5500
  assert data["checkout_request_id"] == "ws_CO_1"
  payment = session.get(Payment, data["payment_id"])
  assert payment.member_id == "member-1"


def test_validation_error_shape(client, member_headers):
  r = client.post("/api/payments/initiate", headers=member_headers, json={"phone": "12", "plan_type": "month"})
  assert r.status_code == 400
  assert r.json()["error"]["code"] == "VALIDATION_ERROR"

  r = client.post("/api/payments/initiate", headers=member_headers, json={"plan_type": "month"})
  assert r.status_code == 400
  assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_gateway_rejection_surfaces_provider_reason(client, member_headers, gateway):
  gateway.reject_with = "Invalid PhoneNumber"
  r = client.post("/api/payments/initiate", headers=member_headers, json={"phone": "0712345678", "plan_type": "day"})
  assert r.status_code == 400
  assert r.json()["error"] == {"code": "MPESA_ERROR", "message": "Invalid PhoneNumber", "details": {"payment_id": 1}}


def test_callback_endpoint_flow(client, member_headers, body):
  r = client.post("/api/payments/initiate", headers=member_headers, json={"phone": "0712345678", "plan_type": "week"})
  payment_id = r.json()["payment_id"]

  r = client.post("/api/payments/callback", content=body(checkout_id="ws_CO_1", amount=2000))
  assert r.status_code == 200
  assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

  r = client.get("/api/payments/status", params={"payment_id": payment_id}, headers=member_headers)
  assert r.status_code == 200
  assert r.json()["payment"]["status"] == "completed"
  assert r.json()["payment"]["mpesa_receipt"] == "QKJ4ABC123"

  r = client.get("/api/memberships/queue-plan", params={"member_id": "member-1"}, headers=member_headers)
  assert r.json()["current_plan"] == "week"


def test_callback_garbage_is_rejected_not_500(client):
  r = client.post("/api/payments/callback", content=b"<xml/>")
  assert r.status_code == 200
  assert r.json()["ResultCode"] == 1


def test_production_ignores_client_forwarded_for(client, settings, add_payment, body, session):
  settings.app_env = "production"
  p = add_payment()

  r = client.post("/api/payments/callback", content=body(), headers={"X-Forwarded-For": "196.201.214.200"})

  assert r.status_code == 200
  assert r.json() == {"ResultCode": 1, "ResultDesc": "Unauthorized"}
  session.expire_all()
  assert session.get(Payment, p.id).status == "pending"
  assert session.exec(select(Membership)).all() == []
  blocked = session.exec(select(SecurityLog)).one()
  assert blocked.event_type == "MPESA_CALLBACK_BLOCKED"
  assert blocked.ip_address == "testclient"


def test_production_reads_forwarded_for_from_trusted_proxy(client, settings, add_payment, body, session):
  settings.app_env = "production"
  settings.trusted_proxies = ["testclient", "10.0.0.0/8"]
  p = add_payment()

  # left-most entry is whatever the caller claimed; our proxies appended the rest
  forwarded = "203.0.113.9, 196.201.214.200, 10.1.2.3"
  r = client.post("/api/payments/callback", content=body(), headers={"X-Forwarded-For": forwarded})

  assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
  session.expire_all()
  assert session.get(Payment, p.id).status == "completed"


def test_production_trusted_proxy_spoofed_left_hop_blocked(client, settings, add_payment, body, session):
  settings.app_env = "production"
  settings.trusted_proxies = ["testclient"]
  p = add_payment()

  r = client.post("/api/payments/callback", content=body(), headers={"X-Forwarded-For": "196.201.214.200, 203.0.113.9"})

  assert r.json()["ResultCode"] == 1
  session.expire_all()
  assert session.get(Payment, p.id).status == "pending"


def test_status_with_gateway_query(client, member_headers):
  r = client.post("/api/payments/initiate", headers=member_headers, json={"phone": "0712345678", "plan_type": "day"})
  payment_id = r.json()["payment_id"]
  r = client.get("/api/payments/status", params={"payment_id": payment_id, "query": True}, headers=member_headers)
  data = r.json()
  assert data["payment"]["status"] == "pending"
  assert data["gateway"]["result_code"] == "1032"


def test_status_of_someone_elses_payment(client, add_payment):
  p = add_payment(member_id="member-2")
  r = client.get("/api/payments/status", params={"payment_id": p.id}, headers={"X-User-Id": "member-1", "X-User-Type": "member"})
  assert r.status_code == 403


def test_status_not_found(client, member_headers):
  r = client.get("/api/payments/status", params={"payment_id": 999}, headers=member_headers)
  assert r.status_code == 404
  assert r.json()["error"]["code"] == "NOT_FOUND"


def test_history(client, member_headers, add_payment):
  add_payment(checkout_request_id="a")
  add_payment(checkout_request_id="b", member_id="member-2")
  r = client.get("/api/payments/history", headers=member_headers)
  assert len(r.json()["payments"]) == 1


def test_queue_plan_is_staff_only(client, member_headers):
  r = client.post("/api/memberships/queue-plan", headers=member_headers, json={"member_id": "member-1", "phone": "0712345678", "plan_type": "week"})
  assert r.status_code == 403


def test_queue_and_cancel_via_api(client, staff_headers, add_membership, session):
  today = date.today()
  add_membership(start_date=today, expiry_date=today + timedelta(days=30))

  r = client.post("/api/memberships/queue-plan", headers=staff_headers, json={"member_id": "member-1", "phone": "0712345678", "plan_type": "week"})
  assert r.status_code == 200
  assert r.json()["next_plan"] == "week"

  r = client.post("/api/memberships/queue-plan", headers=staff_headers, json={"member_id": "nobody", "phone": "0712345678", "plan_type": "week"})
  assert r.status_code == 400
  assert r.json()["error"]["code"] == "NO_MEMBERSHIP"

  r = client.delete("/api/memberships/queue-plan", params={"member_id": "member-1"}, headers=staff_headers)
  assert r.status_code == 200
  session.expire_all()
  m = session.exec(select(Membership)).one()
  assert m.next_plan_type is None


def test_cancel_paid_queue_via_api(client, staff_headers, add_membership):
  today = date.today()
  add_membership(start_date=today, expiry_date=today + timedelta(days=30), next_plan_type="week", next_plan_paid=True)
  r = client.delete("/api/memberships/queue-plan", params={"member_id": "member-1"}, headers=staff_headers)
  assert r.status_code == 400
  assert r.json()["error"]["code"] == "ALREADY_PAID"


def test_cron_open_without_secret_in_development(client):
  r = client.post("/api/cron/activate-plans")
  assert r.status_code == 200
  assert r.json()["activated_count"] == 0


def test_cron_secret_enforced(client, settings):
  settings.cron_secret = "s3cret"
  assert client.get("/api/cron/activate-plans").status_code == 401
  assert client.get("/api/cron/activate-plans", headers={"Authorization": "Bearer wrong"}).status_code == 401
  r = client.get("/api/cron/activate-plans", headers={"Authorization": "Bearer s3cret"})
  assert r.status_code == 200
