from decimal import Decimal

from flask import request, jsonify, session, Blueprint, current_app
from flask_login import login_user, logout_user

from extensions import db
from logger import log_event, app_logger
from models import User, Wallet, AuditLog, PlatformSettings, UserStatus, IncomeType
from mlm.config import ErrorCodes
from mlm.income_engine import IncomeEngine
from mlm.referral_tree import ReferralTreeHelper, ReferralTreeError
from utils import (
    validate_email, validate_phone, validate_wallet_address, generate_user_code,
    get_client_ip, login_required_api, error_response, utcnow,
)
import logging


logger = logging.getLogger(__name__)
#==================================================================================================================

bp = Blueprint("auth", __name__, url_prefix="")

MIN_PASSWORD_LENGTH = 6


#===========================================================================
#      SIGN UP ROUTE.
#==============================================================================
@bp.route("/api/signup", methods=["POST"])
def signup():
    """
    Create new user + attach them under their sponsor.
    Expected JSON:
    {
        "fullName": "", "email": "", "phone": "", "password": "",
        "sponsorCode": "", "walletAddress": ""
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return error_response("Invalid or missing JSON body")

    full_name = (data.get("fullName") or "").strip()
    email = (data.get("email") or "").strip().lower()
    phone = (data.get("phone") or "").strip()
    password = data.get("password") or ""
    sponsor_code = (data.get("sponsorCode") or "").strip().upper()
    wallet_address = (data.get("walletAddress") or "").strip() or None

    # -----------------------------------------
    #  BASIC VALIDATION
    # -----------------------------------------
    if not full_name or not email or not password:
        return error_response("Full name, email and password are required")

    if not validate_email(email):
        return error_response("Invalid email address", code=ErrorCodes.VALIDATION_INVALID_EMAIL)

    if phone and not validate_phone(phone):
        return error_response("Invalid phone number", code=ErrorCodes.VALIDATION_INVALID_CONTACT)

    if wallet_address and not validate_wallet_address(wallet_address):
        return error_response("Invalid BEP20 wallet address", code=ErrorCodes.VALIDATION_INVALID_WALLET)

    if len(password) < MIN_PASSWORD_LENGTH:
        return error_response(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    try:
        settings = PlatformSettings.get()
        if not settings.registration_open:
            return error_response("Registration is currently closed", 403)

        if User.query.filter_by(email=email).first():
            return error_response("Email already registered")

        # -----------------------------------------
        #  HANDLE SPONSOR CODE
        # -----------------------------------------
        sponsor = None
        if sponsor_code:
            sponsor = User.query.filter_by(user_code=sponsor_code).with_for_update().first()
            if not sponsor:
                return error_response("Sponsor not found", 404, ErrorCodes.SPONSOR_NOT_FOUND)

        new_user = User(
            user_code=generate_user_code(lambda code: User.query.filter_by(user_code=code).first() is not None),
            full_name=full_name,
            email=email,
            phone=phone or None,
            wallet_address=wallet_address,
        )
        new_user.set_password(password)
        db.session.add(new_user)
        db.session.flush()

        if sponsor:
            ReferralTreeHelper.attach_to_sponsor(new_user, sponsor)

        db.session.add(Wallet(user_id=new_user.id, balance=Decimal("0.00")))

        welcome_bonus = Decimal(settings.welcome_bonus or 0)
        if welcome_bonus > 0:
            IncomeEngine.credit_available(new_user, welcome_bonus, IncomeType.WELCOME.value,
                                          description="Welcome bonus")

        AuditLog.record("user_registered", actor_id=new_user.id, ip_address=get_client_ip(request),
                        sponsor_code=sponsor.user_code if sponsor else None)
        db.session.commit()

    except ReferralTreeError as e:
        db.session.rollback()
        return error_response(str(e), code=ErrorCodes.SIGNUP_FAILED)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Signup failed for {email}: {e}")
        return error_response("Signup failed. Please try again.", 500, ErrorCodes.SIGNUP_FAILED)

    log_event(app_logger, "auth", "User registered", user_id=new_user.id,
              sponsor=sponsor.user_code if sponsor else None)

    return jsonify({
        "success": True,
        "message": "User created successfully",
        "user": new_user.to_dict(),
    }), 201


# --------------------------------------------------
#      Login Route
# --------------------------------------------------
@bp.route("/api/login", methods=["POST"])
def login():
    """
    Authenticate a user.
    Expected JSON:
    {
        "email_or_code": "",
        "password": ""
    }
    """
    data = request.get_json(silent=True) or {}
    identifier = (data.get("email_or_code") or data.get("email") or "").strip()
    password = data.get("password") or ""

    if not identifier or not password:
        return error_response("Email or user code and password are required")

    user = User.query.filter(
        (User.email == identifier.lower()) | (User.user_code == identifier.upper())
    ).first()

    if not user or not user.check_password(password):
        return error_response("Invalid credentials", 401, ErrorCodes.LOGIN_FAILED)

    if user.status in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value):
        return error_response(f"Account is {user.status}", 403, ErrorCodes.LOGIN_FAILED)

    user.last_login_at = utcnow()
    db.session.commit()

    session["user_id"] = user.id
    # is_active means "has an activated rank", not "may log in"
    login_user(user, force=True)
    logger.info(f"User {user.user_code} logged in")

    return jsonify({
        "success": True,
        "message": "Login successful",
        "user": user.to_dict(),
    }), 200


#-----------------------------------------------------------------------------------------------------
@bp.route("/api/logout", methods=["POST"])
def logout():
    """
    Destroy User session
    """
    logout_user()
    session.clear()
    return jsonify({"success": True, "message": "Logged out successfully"}), 200


# --------------------------------------------------
# Check Session (for frontend auto-login)
# --------------------------------------------------
@bp.route("/session", methods=["GET"])
def check_session():
    """Returns current logged-in user data if authenticated"""
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"authenticated": False}), 200

    user = db.session.get(User, user_id)
    if not user:
        session.clear()
        return jsonify({"authenticated": False}), 200

    return jsonify({
        "authenticated": True,
        "user": user.to_dict()
    }), 200


@bp.route("/api/change-password", methods=["POST"])
@login_required_api
def change_password(user):
    data = request.get_json(silent=True) or {}
    current_password = data.get("currentPassword") or ""
    new_password = data.get("newPassword") or ""

    if not user.check_password(current_password):
        return error_response("Current password is incorrect", 401)

    if len(new_password) < MIN_PASSWORD_LENGTH:
        return error_response(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    user.set_password(new_password)
    AuditLog.record("password_changed", actor_id=user.id, ip_address=get_client_ip(request))
    db.session.commit()
    return jsonify({"success": True, "message": "Password updated"}), 200
