import re
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from functools import wraps

from flask import jsonify, session

from extensions import db


TWO_PLACES = Decimal("0.01")
BEP20_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
USER_CODE_PATTERN = re.compile(r"^WG\d{6}$")


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def validate_email(email):
    return re.match(r'^[\w\.+-]+@[\w\.-]+\.\w+$', email or "")


def validate_phone(phone):
    return re.match(r'^\+?\d{9,15}$', phone or "")


def validate_wallet_address(address):
    return bool(address) and BEP20_ADDRESS_PATTERN.match(address) is not None


def to_decimal(value, default=None):
    """Parse user input into a Decimal, returning ``default`` when it is not a number."""
    if value is None or isinstance(value, bool):
        return default
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    if not result.is_finite():
        return default
    return result


def round2(value) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def money(value) -> float:
    """JSON-friendly amount."""
    return float(value or 0)


def isoformat(dt_value):
    return dt_value.isoformat() if dt_value else None


def generate_user_code(exists, attempts=10):
    """
    Generate a ``WG`` + 6 digit member code.
    ``exists`` is called with each candidate and must return True when taken.
    """
    for _ in range(attempts):
        code = "WG" + "".join(secrets.choice("0123456789") for _ in range(6))
        if not exists(code):
            return code
    raise RuntimeError("Unable to generate a unique user code")


def get_client_ip(request):
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def login_required_api(f):
    """Reject requests without a logged-in, non-blocked session user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        from models import User

        user_id = session.get("user_id")
        if not user_id:
            return jsonify({"success": False, "error": "Unauthorized"}), 401

        user = db.session.get(User, user_id)
        if not user:
            session.clear()
            return jsonify({"success": False, "error": "Unauthorized"}), 401

        if user.status in ("suspended", "blocked"):
            return jsonify({"success": False, "error": f"Account is {user.status}"}), 403

        return f(user, *args, **kwargs)

    return decorated_function


def error_response(message, status=400, code=None):
    body = {"success": False, "error": message}
    if code:
        body["code"] = code
    return jsonify(body), status
