from decimal import Decimal

import pytest

from extensions import db
from models import User, Withdrawal, AuditLog

WALLET_ADDRESS = "0x" + "ef" * 20


def _signup(client, **overrides):
    payload = {
        "fullName": "Jane Member",
        "email": "jane@example.com",
        "phone": "+256700000001",
        "password": "secret123",
        "walletAddress": WALLET_ADDRESS,
    }
    payload.update(overrides)
    return client.post("/api/signup", json=payload)


# ----------------------------------------------------------------------------------
# AUTH
# ----------------------------------------------------------------------------------
def test_signup_login_session_logout(client):
    response = _signup(client)
    assert response.status_code == 201
    body = response.get_json()
    assert body["user"]["userCode"].startswith("WG")
    assert body["user"]["isActive"] is False

    response = client.post("/api/login", json={"email_or_code": "JANE@example.com", "password": "secret123"})
    assert response.status_code == 200

    session_body = client.get("/session").get_json()
    assert session_body["authenticated"] is True
    assert session_body["user"]["email"] == "jane@example.com"

    assert client.post("/api/logout").status_code == 200
    assert client.get("/session").get_json() == {"authenticated": False}


def test_login_with_user_code(client):
    user_code = _signup(client).get_json()["user"]["userCode"]
    response = client.post("/api/login", json={"email_or_code": user_code.lower(), "password": "secret123"})
    assert response.status_code == 200


def test_signup_with_sponsor(client, make_user):
    sponsor = make_user()
    response = _signup(client, sponsorCode=sponsor.user_code.lower())
    assert response.status_code == 201
    assert response.get_json()["user"]["sponsorCode"] == sponsor.user_code
    assert db.session.get(User, sponsor.id).direct_referrals == 1


@pytest.mark.parametrize("overrides,status,code", [
    ({"email": "not-an-email"}, 400, "VALIDATION_INVALID_EMAIL"),
    ({"phone": "12"}, 400, "VALIDATION_INVALID_CONTACT"),
    ({"walletAddress": "0x1"}, 400, "VALIDATION_INVALID_WALLET"),
    ({"sponsorCode": "WG000000"}, 404, "SPONSOR_NOT_FOUND"),
])
def test_signup_validation(client, overrides, status, code):
    response = _signup(client, **overrides)
    assert response.status_code == status
    assert response.get_json()["code"] == code


def test_signup_rejects_short_password_and_duplicates(client):
    assert _signup(client, password="123").status_code == 400
    assert _signup(client).status_code == 201
    response = _signup(client)
    assert response.status_code == 400
    assert response.get_json()["error"] == "Email already registered"


def test_signup_closed_and_welcome_bonus(client, settings):
    settings.welcome_bonus = Decimal("1.50")
    db.session.commit()
    assert _signup(client).get_json()["user"]["availableBalance"] == 1.5

    settings.registration_open = False
    db.session.commit()
    assert _signup(client, email="late@example.com").status_code == 403


def test_invalid_login(client, make_user):
    user = make_user()
    response = client.post("/api/login", json={"email_or_code": user.email, "password": "nope"})
    assert response.status_code == 401
    assert response.get_json()["code"] == "LOGIN_FAILED"


def test_blocked_user_cannot_login(client, make_user):
    user = make_user(status="blocked")
    response = client.post("/api/login", json={"email_or_code": user.email, "password": "secret123"})
    assert response.status_code == 403


def test_change_password(client, make_user, login):
    user = make_user()
    login(user)
    assert client.post("/api/change-password",
                       json={"currentPassword": "wrong", "newPassword": "another1"}).status_code == 401
    assert client.post("/api/change-password",
                       json={"currentPassword": "secret123", "newPassword": "another1"}).status_code == 200
    assert db.session.get(User, user.id).check_password("another1")


# ----------------------------------------------------------------------------------
# MEMBER ENDPOINTS
# ----------------------------------------------------------------------------------
@pytest.mark.parametrize("path", [
    "/api/user/dashboard", "/api/user/profile", "/api/income-pools",
    "/payments/withdrawals", "/api/user/activity",
])
def test_member_routes_require_login(client, path):
    response = client.get(path)
    assert response.status_code == 401


def test_activate_through_api(client, make_user, login):
    sponsor = make_user()
    user = make_user(sponsor=sponsor, balance="10")
    login(user)

    response = client.post("/api/activate-rank", json={"rank": "azurite"})
    assert response.status_code == 200
    body = response.get_json()
    assert body["activatedRanks"] == ["azurite"]
    assert body["currentRank"] == "azurite"

    response = client.post("/api/activate-rank", json={"rank": "ruby"})
    assert response.status_code == 400
    assert response.get_json()["code"] == "INSUFFICIENT_BALANCE"

    response = client.post("/api/activate-rank", json={"rank": "azurite"})
    assert response.get_json()["code"] == "ACTIVATION_FAILED"

    dashboard = client.get("/api/user/dashboard").get_json()["dashboard"]
    assert dashboard["rankProgress"]["currentRank"] == "azurite"
    assert dashboard["rankProgress"]["nextRank"] == "pearl"
    assert dashboard["rankProgress"]["nextRankAmount"] == 10.0
    assert dashboard["user"]["lockedBalance"] == 0.5
    assert dashboard["incomeSummary"]["lockedIncome"] == pytest.approx(0.5)

    pools = client.get("/api/income-pools").get_json()
    assert pools["pools"][0]["rank"] == "azurite"
    assert pools["requiredDirectReferrals"] == 2

    response = client.post("/api/claim-locked-income")
    assert response.status_code == 403
    assert response.get_json()["code"] == "CLAIM_FAILED"

    response = client.post("/api/income-pools/claim", json={"rank": "gold"})
    assert response.status_code == 400


def test_profile_update(client, make_user, login):
    user = make_user()
    login(user)

    response = client.put("/api/user/profile", json={"fullName": "Renamed", "phone": "bad"})
    assert response.status_code == 400
    assert db.session.get(User, user.id).full_name != "Renamed"

    response = client.put("/api/user/profile", json={"fullName": "Renamed", "phone": "+256700000002"})
    assert response.status_code == 200
    assert response.get_json()["user"]["fullName"] == "Renamed"


def test_referral_and_team(client, make_user, login):
    user = make_user()
    make_user(sponsor=user)
    login(user)

    referral = client.get("/api/user/referral").get_json()
    assert referral["referralCode"] == user.user_code
    assert referral["referralLink"].endswith(f"/signup?ref={user.user_code}")
    assert len(referral["referrals"]) == 1

    team = client.get("/api/user/team?levels=2").get_json()
    assert team["stats"]["totalMembers"] == 1


def test_incomes_endpoint_filters_type(client, make_user, activate, login):
    sponsor = make_user()
    member = make_user(sponsor=sponsor)
    activate(member)
    login(sponsor)

    body = client.get("/api/user/incomes?type=referral").get_json()
    assert [i["amount"] for i in body["incomes"]] == [2.5]
    assert body["summary"]["byType"]["referral"]["total"] == pytest.approx(2.5)

    assert client.get("/api/user/incomes?type=bogus").status_code == 400


def test_transfer_and_fund_request(client, make_user, login):
    user = make_user(balance="20")
    other = make_user()
    login(user)

    response = client.post("/api/transfer", json={"recipientCode": other.user_code, "amount": 5})
    assert response.status_code == 200
    assert response.get_json()["availableBalance"] == 15.0

    response = client.post("/api/transfer", json={"recipientCode": "WG999999", "amount": 5})
    assert response.status_code == 404

    response = client.post("/api/fund-requests", json={"amount": 50, "transactionHash": "0xabc"})
    assert response.status_code == 201
    assert response.get_json()["fundRequest"]["status"] == "pending"
    assert len(client.get("/api/fund-requests").get_json()["fundRequests"]) == 1


def test_withdraw_flow(client, make_user, activate, login):
    user = make_user()
    activate(user)
    user = db.session.get(User, user.id)
    user.available_balance = Decimal("60")
    db.session.commit()
    login(user)

    limits = client.get("/payments/withdrawals/limits").get_json()
    assert limits["limits"]["minWithdrawal"] == 10.0
    assert limits["limits"]["fees"]["usdt_bep20"] == 5.0

    response = client.post("/payments/withdraw", json={"amount": 20})
    assert response.status_code == 201
    body = response.get_json()
    # Falls back to the profile wallet address
    assert body["withdrawal"]["walletAddress"] == user.wallet_address
    assert body["availableBalance"] == 40.0

    withdrawal_id = body["withdrawal"]["id"]
    detail = client.get(f"/payments/withdrawals/{withdrawal_id}").get_json()
    assert detail["withdrawal"]["queue"]["amount"] == 19.0

    response = client.post("/payments/withdraw", json={"amount": 20})
    assert response.status_code == 400
    assert response.get_json()["code"] == "WITHDRAWAL_FAILED"

    assert client.get("/payments/withdrawals/999").status_code == 404
    assert client.post("/payments/withdraw", json={}).status_code == 400


def test_activity_feeds(client, make_user, activate, login):
    sponsor = make_user()
    member = make_user(sponsor=sponsor)
    activate(member)

    public = client.get("/api/recent_activity").get_json()
    assert public["pagination"]["total"] == 1
    assert public["activities"][0]["title"] == "Rank Activation - Azurite"

    login(member)
    feed = client.get("/api/user/activity?page_size=1").get_json()
    assert feed["pagination"]["total"] == 2
    assert feed["pagination"]["pages"] == 2
    assert len(feed["activities"]) == 1
    titles = {a["title"] for a in client.get("/api/user/activity").get_json()["activities"]}
    assert titles == {"Rank Activation - Azurite", "Global Income"}

    login(sponsor)
    titles = [a["title"] for a in client.get("/api/user/activity").get_json()["activities"]]
    assert titles == ["Referral Income"]

    assert client.get("/api/user/activity?page=0").status_code == 400


# ----------------------------------------------------------------------------------
# ADMIN
# ----------------------------------------------------------------------------------
def test_admin_routes_are_guarded(client, make_user, login):
    assert client.get("/admin/data").status_code == 401
    login(make_user())
    response = client.get("/admin/data")
    assert response.status_code == 403
    assert response.get_json()["code"] == "AUTH_INSUFFICIENT_PERMISSIONS"


def test_admin_dashboard_and_search(client, admin, make_user, login):
    member = make_user()
    login(admin)

    stats = client.get("/admin/data").get_json()["stats"]
    assert stats["users"]["total"] == 2

    results = client.get(f"/admin/search?q={member.user_code}").get_json()
    assert [u["id"] for u in results["users"]] == [member.id]
    assert client.get("/admin/search").status_code == 400

    detail = client.get(f"/admin/users/{member.id}").get_json()
    assert detail["network"]["userCode"] == member.user_code


def test_admin_user_updates(client, admin, make_user, login):
    member = make_user(balance="10")
    login(admin)

    response = client.put(f"/admin/users/{member.id}", json={"status": "suspended"})
    assert response.status_code == 200
    assert db.session.get(User, member.id).status == "suspended"

    response = client.put(f"/admin/users/{member.id}", json={"balanceAdjustment": "-20", "reason": "fix"})
    assert response.status_code == 400
    assert response.get_json()["code"] == "INSUFFICIENT_BALANCE"

    response = client.put(f"/admin/users/{member.id}", json={"balanceAdjustment": "5", "reason": "bonus"})
    assert response.status_code == 200
    assert response.get_json()["user"]["availableBalance"] == 15.0

    response = client.put(f"/admin/users/{admin.id}", json={"role": "user"})
    assert response.status_code == 400
    assert db.session.get(User, admin.id).role == "admin"

    assert AuditLog.query.filter_by(action="user_updated").count() == 2


def test_admin_settings(client, admin, login):
    login(admin)

    response = client.put("/admin/settings", json={"directReferralRequirement": 3, "minWithdrawal": "15"})
    assert response.status_code == 200
    settings = response.get_json()["settings"]
    assert settings["directReferralRequirement"] == 3
    assert settings["minWithdrawal"] == 15.0

    assert client.put("/admin/settings", json={"globalCycleSize": 1}).status_code == 400
    assert client.put("/admin/settings", json={"registrationOpen": "yes"}).status_code == 400
    assert client.put("/admin/settings", json={"minWithdrawal": "90000"}).status_code == 400
    assert client.get("/admin/settings").get_json()["settings"]["minWithdrawal"] == 15.0


def test_admin_withdrawal_review_and_payout_sweep(client, admin, make_user, activate, login):
    member = make_user()
    activate(member)
    member = db.session.get(User, member.id)
    member.available_balance = Decimal("50")
    db.session.commit()
    login(member)
    withdrawal_id = client.post("/payments/withdraw", json={"amount": 20}).get_json()["withdrawal"]["id"]

    login(admin)
    assert client.post(f"/admin/withdrawals/{withdrawal_id}/approve").status_code == 200

    stats = client.post("/admin/process-payouts").get_json()["stats"]
    assert stats["succeeded"] == 1
    assert db.session.get(Withdrawal, withdrawal_id).status == "completed"

    assert client.post(f"/admin/withdrawals/{withdrawal_id}/reject", json={"reason": "late"}).status_code == 400
    assert client.post("/admin/withdrawals/999/approve").status_code == 404


def test_admin_fund_requests_and_payouts(client, admin, make_user, login):
    member = make_user()
    login(member)
    request_id = client.post("/api/fund-requests", json={"amount": 30}).get_json()["fundRequest"]["id"]

    login(admin)
    pending = client.get("/admin/fund-requests").get_json()["fundRequests"]
    assert [r["id"] for r in pending] == [request_id]
    assert client.post(f"/admin/fund-requests/{request_id}/approve", json={"note": "ok"}).status_code == 200
    assert client.post(f"/admin/fund-requests/{request_id}/reject").status_code == 400

    response = client.post("/admin/payouts", json={"userId": member.id, "amount": 12})
    assert response.status_code == 201
    payout_id = response.get_json()["payout"]["id"]

    login(member)
    assert client.get("/api/user/profile").get_json()["user"]["fundingBalance"] == 30.0
    response = client.post("/api/payouts/claim", json={"payoutId": payout_id, "password": "bad"})
    assert response.status_code == 401
    response = client.post("/api/payouts/claim", json={"payoutId": payout_id, "password": "secret123"})
    assert response.status_code == 200
    assert response.get_json()["availableBalance"] == 12.0


def test_admin_job_triggers(client, admin, settings, make_user, activate, login):
    settings.global_cycle_size = 2
    db.session.commit()
    for user in (make_user(), make_user()):
        activate(user)
    login(admin)

    result = client.post("/admin/process-cycles").get_json()
    assert result["processed"] == 1

    stats = client.post("/admin/generate-pool-income").get_json()["stats"]
    assert stats["visited"] == 2

    assert client.post("/admin/cleanup").get_json()["cycles_deleted"] == 0
    assert len(client.get("/admin/cycles").get_json()["cycles"]) == 1
    assert client.get("/admin/health").get_json()["gatewaySimulated"] is True
    assert client.get("/admin/audit-logs?action=cycles_processed").get_json()["logs"][0]["action"] == "cycles_processed"


# ----------------------------------------------------------------------------------
# PLATFORM
# ----------------------------------------------------------------------------------
def test_maintenance_mode_blocks_member_writes(client, settings, make_user, admin, login):
    settings.maintenance_mode = True
    db.session.commit()
    user = make_user(balance="10")

    login(user)
    response = client.post("/api/activate-rank", json={"rank": "azurite"})
    assert response.status_code == 503
    assert client.get("/api/user/profile").status_code == 200

    login(admin)
    assert client.put("/admin/settings", json={"maintenanceMode": False}).status_code == 200


def test_healthz_and_json_errors(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["database"] == "ok"

    response = client.get("/does-not-exist")
    assert response.status_code == 404
    assert response.get_json()["success"] is False

    assert client.get("/api/ranks").get_json()["distribution"]["referral_percentage"] == 50.0
