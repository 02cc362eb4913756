import uuid
from datetime import datetime, timedelta, timezone

from flask import g, request
from flask_jwt_extended import create_access_token, get_jwt_identity, jwt_required
from werkzeug.security import check_password_hash, generate_password_hash

from . import bp
from ..extensions import db
from ..model import RefreshToken, User
from ..utils.api import err, ok
from ..utils.decorators import login_required, role_at_least, role_required

ROLES = {"user", "manager", "admin"}
PROFILE_FIELDS = ("first_name", "last_name", "phone", "address")


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- helper: create & persist a token pair ---
def _issue_tokens(user_id: int, refresh_ttl_days: int = 7):
    access_token = create_access_token(identity=str(user_id))
    refresh_token_str = str(uuid.uuid4())
    db.session.add(RefreshToken(
        user_id=user_id,
        token=refresh_token_str,
        expires_at=_utcnow() + timedelta(days=refresh_ttl_days),
    ))
    return access_token, refresh_token_str


@bp.post("/register")
@jwt_required(optional=True)   # public signup; a role is honoured only for privileged callers
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    first_name = (data.get("first_name") or "").strip()
    last_name = (data.get("last_name") or "").strip()

    errors = []
    if not email or "@" not in email:
        errors.append({"field": "email", "message": "valid email required"})
    if len(password) < 6:
        errors.append({"field": "password", "message": "min 6 chars"})
    if not first_name:
        errors.append({"field": "first_name", "message": "first_name required"})
    if errors:
        return err("Validation failed", 400, {"errors": errors})
    if User.query.filter_by(email=email).first():
        return err("Email already registered", 409)

    # Bootstrap: very first account becomes admin
    is_first_user = db.session.query(User.id).count() == 0
    role = "admin" if is_first_user else "user"

    requested_role = (data.get("role") or "user").strip().lower()
    caller_id = get_jwt_identity()
    if not is_first_user and caller_id and requested_role in ROLES:
        caller = db.session.get(User, int(caller_id))
        if caller and caller.role == "admin":
            role = requested_role

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=first_name,
        last_name=last_name or None,
        phone=data.get("phone"),
        role=role,
    )
    db.session.add(user)
    db.session.flush()
    access_token, refresh_token = _issue_tokens(user.id)
    db.session.commit()

    return ok("Account created successfully", {
        "user": user.as_dict(),
        "token": access_token,
        "refresh_token": refresh_token,
    }, 201)


@bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return err("Email and password are required", 400)
    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        return err("Invalid email or password", 401)
    if not user.is_active:
        return err("Account is disabled", 403)

    access_token, token_str = _issue_tokens(user.id)
    db.session.commit()
    return ok("You've logged in successfully", {
        "user": user.as_dict(),
        "token": access_token,
        "refresh_token": token_str,
    })


@bp.post("/refresh")
def refresh():
    data = request.get_json(silent=True) or {}
    token_str = data.get("refresh_token")
    if not token_str:
        return err("refresh_token is required", 400)

    refresh_row = RefreshToken.query.filter_by(token=token_str).first()
    if not refresh_row or refresh_row.expires_at < _utcnow():
        return err("Invalid or expired refresh token", 401)

    user_id = refresh_row.user_id
    # single-use: rotate
    db.session.delete(refresh_row)
    db.session.flush()
    new_access, new_refresh = _issue_tokens(user_id)
    db.session.commit()
    return ok("Token refreshed", {"token": new_access, "refresh_token": new_refresh})


@bp.get("/me")
@login_required
def me():
    return ok("profile", {"user": g.current_user.as_dict()})


@bp.put("/me")
@login_required
def update_me():
    data = request.get_json(silent=True) or {}
    user = g.current_user
    if "address" in data and data["address"] is not None and not isinstance(data["address"], dict):
        return err("Validation failed", 400, {"errors": [{"field": "address", "message": "must be an object"}]})
    for field in PROFILE_FIELDS:
        if field in data:
            value = data[field]
            setattr(user, field, value.strip() if isinstance(value, str) else value)
    db.session.commit()
    return ok("Profile updated", {"user": user.as_dict()})


@bp.put("/me/password")
@login_required
def change_password():
    data = request.get_json(silent=True) or {}
    current = data.get("current_password") or ""
    new = data.get("new_password") or ""
    if len(new) < 6:
        return err("Validation failed", 400, {"errors": [{"field": "new_password", "message": "min 6 chars"}]})

    user = g.current_user
    if not check_password_hash(user.password_hash, current):
        return err("Current password is incorrect", 400)

    user.password_hash = generate_password_hash(new)
    # other sessions must log in again
    RefreshToken.query.filter_by(user_id=user.id).delete()
    db.session.commit()
    return ok("Password changed successfully")


@bp.patch("/users/<int:user_id>/role")
@role_required("admin")
def update_user_role(user_id):
    body = request.get_json(silent=True) or {}
    new_role = (body.get("role") or "").strip().lower()
    if new_role not in ROLES:
        return err("Invalid role", 400)

    target = db.session.get(User, user_id)
    if not target:
        return err("User not found", 404)

    # Prevent demoting the LAST admin
    if target.role == "admin" and new_role != "admin":
        if db.session.query(User).filter_by(role="admin").count() <= 1:
            return err("Cannot demote the last admin", 400)

    target.role = new_role
    db.session.commit()
    return ok("Role updated", {"user": target.as_dict()})


@bp.get("/users")
@role_at_least("manager", message="Only managers and admins can list users")
def list_users():
    q = User.query
    if g.current_user.role == "manager":
        q = q.filter(User.role == "user")
    return ok("users", {"users": [u.as_dict() for u in q.order_by(User.id.asc()).all()]})


@bp.delete("/users/<int:user_id>")
@role_at_least("manager")
def delete_user(user_id):
    target = db.session.get(User, user_id)
    if not target:
        return err("User not found", 404)
    if g.current_user.role == "manager" and target.role != "user":
        return err("Forbidden: managers may delete users only", 403)
    if target.role == "admin" and db.session.query(User).filter_by(role="admin").count() <= 1:
        return err("Cannot delete the last admin", 400)

    RefreshToken.query.filter_by(user_id=target.id).delete()
    db.session.delete(target)
    db.session.commit()
    return ok("User deleted")
