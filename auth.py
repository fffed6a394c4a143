# auth.py
from flask import Blueprint, render_template, redirect, url_for, session, request, flash, g
from functools import wraps
import logging

from core import db, User, Order

log = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)
account_bp = Blueprint("account", __name__)

MIN_PASSWORD_LENGTH = 6


def current_user():
    if "current_user" not in g:
        uid = session.get("user_id")
        g.current_user = db.session.get(User, uid) if uid else None
    return g.current_user


def login_user(user):
    session["user_id"] = user.id
    g.current_user = user


def safe_next(target):
    # only same-site relative paths
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return None


def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            flash("Please log in to continue.", "error")
            return redirect(url_for("auth.login", next=request.full_path.rstrip("?")))
        return f(*args, **kwargs)
    return wrapper


def admin_required(f):
    @wraps(f)
    @login_required
    def wrapper(*args, **kwargs):
        if not current_user().is_admin:
            flash("Access denied. Administrator privileges required.", "error")
            return redirect(url_for("shop.index"))
        return f(*args, **kwargs)
    return wrapper


# --- Routes: Auth ---
@auth_bp.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "")
        full_name = request.form.get("full_name", "").strip()
        if not email or not password:
            flash("Email and password are required.", "error")
            return redirect(url_for("auth.register"))
        if len(password) < MIN_PASSWORD_LENGTH:
            flash(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.", "error")
            return redirect(url_for("auth.register"))
        if User.query.filter_by(email=email).first():
            flash("An account with this email already exists.", "error")
            return redirect(url_for("auth.register"))

        user = User(email=email, display_name=full_name or email.split("@")[0], role="user")
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        log.info("Registered user %s", email)
        login_user(user)
        flash("Account created. Welcome!", "success")
        return redirect(safe_next(request.args.get("next")) or url_for("shop.index"))
    return render_template("auth_register.html")


@auth_bp.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "")
        user = User.query.filter_by(email=email).first()
        if user is None or not user.check_password(password):
            log.warning("Failed login for %s", email)
            flash("Invalid email or password.", "error")
            return redirect(url_for("auth.login", next=request.args.get("next")))
        login_user(user)
        flash(f"Welcome back, {user.display_name}.", "success")
        return redirect(safe_next(request.args.get("next")) or url_for("shop.index"))
    return render_template("auth_login.html")


@auth_bp.route("/logout")
def logout():
    session.pop("user_id", None)
    g.pop("current_user", None)
    flash("Logged out.", "success")
    return redirect(url_for("shop.index"))


# --- Routes: Account ---
@account_bp.route("/")
@login_required
def overview():
    recent = (Order.query.filter_by(user_id=current_user().id)
              .order_by(Order.created_at.desc()).limit(3).all())
    return render_template("account.html", user=current_user(), recent_orders=recent)


@account_bp.route("/profile", methods=["GET", "POST"])
@login_required
def profile():
    user = current_user()
    if request.method == "POST":
        name = request.form.get("display_name", "").strip()
        if name:
            user.display_name = name
        user.phone = request.form.get("phone", "").strip()
        user.address = request.form.get("address", "").strip()
        db.session.commit()
        flash("Profile updated.", "success")
        return redirect(url_for("account.profile"))
    return render_template("account_profile.html", user=user)


@account_bp.route("/orders")
@login_required
def orders():
    rows = (Order.query.filter_by(user_id=current_user().id)
            .order_by(Order.created_at.desc()).all())
    return render_template("account_orders.html", orders=rows)
