import logging

from flask import (
    Blueprint,
    current_app,
    flash,
    redirect,
    render_template,
    request,
    url_for,
)

from .datastore import AuthenticationError, DataStoreError
from .identity import bound_store, current_identity, get_provider, get_tracker
from .views import (
    DASHBOARD_ENDPOINT,
    AdminView,
    CatalogView,
    DashboardView,
    Gate,
    LandingView,
)

logger = logging.getLogger(__name__)

bp = Blueprint("pages", __name__)


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def _flash(view):
    for note in view.notifications:
        message = f"{note.title}: {note.description}" if note.description else note.title
        flash(message, note.category)


def _render(view, gate, template):
    _flash(view)
    if gate is Gate.LOADING:
        return render_template("loading.html")
    if view.redirect_to:
        return redirect(url_for(view.redirect_to))
    return render_template(template, view=view)


def _after_action(view, gate, endpoint, **values):
    _flash(view)
    if gate is Gate.LOADING:
        # Nothing was attempted; refresh back to the page, never to the POST url.
        flash("Please wait: your session is still loading, try again in a moment", "error")
        return render_template("loading.html", refresh_url=url_for(endpoint, **values))
    if view.redirect_to:
        return redirect(url_for(view.redirect_to))
    return redirect(url_for(endpoint, **values))


def _catalog_view():
    return CatalogView(
        bound_store(),
        current_identity(),
        get_tracker(),
        query=request.values.get("q", ""),
        loan_period_days=current_app.config["LOAN_PERIOD_DAYS"],
    )


def _admin_view():
    return AdminView(
        bound_store(),
        current_identity(),
        get_tracker(),
        loan_limit=current_app.config["ADMIN_LOAN_LIMIT"],
    )


# ---------------------------------------------------------
# Landing & auth
# ---------------------------------------------------------

@bp.get("/")
def index():
    view = LandingView(bound_store(), current_identity())
    return _render(view, view.mount(), "index.html")


@bp.get("/auth")
def auth():
    if current_identity().authenticated:
        return redirect(url_for(DASHBOARD_ENDPOINT))
    return render_template("auth.html")


@bp.post("/auth/sign-in")
def sign_in():
    email = request.form.get("email", "").strip()
    password = request.form.get("password", "")
    if not email or not password:
        flash("Email and password are required", "error")
        return redirect(url_for("pages.auth"))

    try:
        get_provider().sign_in(email, password)
    except AuthenticationError as e:
        flash(f"Sign-in failed: {e}", "error")
        return redirect(url_for("pages.auth"))
    except DataStoreError as e:
        logger.error("Sign-in for %s failed: %s", email, e)
        flash(f"Error: {e}", "error")
        return redirect(url_for("pages.auth"))

    return redirect(url_for(DASHBOARD_ENDPOINT))


@bp.post("/auth/sign-up")
def sign_up():
    email = request.form.get("email", "").strip()
    password = request.form.get("password", "")
    if not email or not password:
        flash("Email and password are required", "error")
        return redirect(url_for("pages.auth"))

    try:
        get_provider().sign_up(
            email,
            password,
            first_name=request.form.get("first_name") or None,
            last_name=request.form.get("last_name") or None,
        )
    except AuthenticationError as e:
        flash(f"Sign-up failed: {e}", "error")
        return redirect(url_for("pages.auth"))
    except DataStoreError as e:
        logger.error("Sign-up for %s failed: %s", email, e)
        flash(f"Error: {e}", "error")
        return redirect(url_for("pages.auth"))

    flash("Welcome to LibraryHub!", "message")
    return redirect(url_for(DASHBOARD_ENDPOINT))


@bp.post("/auth/sign-out")
def sign_out():
    get_provider().sign_out()
    flash("Signed out", "message")
    return redirect(url_for("pages.index"))


# ---------------------------------------------------------
# Member pages
# ---------------------------------------------------------

@bp.get("/dashboard")
def dashboard():
    view = DashboardView(bound_store(), current_identity(), get_tracker())
    return _render(view, view.mount(), "dashboard.html")


@bp.get("/inventory")
def inventory():
    view = _catalog_view()
    return _render(view, view.mount(), "inventory.html")


@bp.post("/inventory/<int:book_id>/borrow")
def borrow(book_id):
    view = _catalog_view()
    gate = view.mount()
    if gate is Gate.OPEN and not view.redirect_to:
        view.borrow(book_id)
    return _after_action(view, gate, "pages.inventory", q=view.query or None)


# ---------------------------------------------------------
# Admin pages
# ---------------------------------------------------------

@bp.get("/admin")
def admin():
    view = _admin_view()
    return _render(view, view.mount(), "admin.html")


@bp.post("/admin/books")
def add_book():
    view = _admin_view()
    gate = view.gate()
    if gate is Gate.OPEN and not view.redirect_to:
        view.add_book(request.form)
    return _after_action(view, gate, "pages.admin")


@bp.post("/admin/loans/<int:loan_id>/return")
def return_loan(loan_id):
    view = _admin_view()
    gate = view.gate()
    if gate is Gate.OPEN and not view.redirect_to:
        view.return_loan(loan_id)
    return _after_action(view, gate, "pages.admin", tab="loans")
