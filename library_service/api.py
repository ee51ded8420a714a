import logging

from flask import Blueprint, abort, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from .datastore import AuthenticationError, DataStoreError
from .identity import bound_store, current_identity, get_provider, get_tracker
from .views import AdminView, CatalogView, DashboardView, Gate

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__, url_prefix="/api")

GATE_STATUS = {
    Gate.LOADING: (503, "Identity service unavailable"),
    Gate.SIGN_IN: (401, "Sign in required"),
}

FAILURE_STATUS = {
    "invalid": 400,
    "denied": 403,
    "rejected": 409,
    "busy": 409,
    "backend": 502,
}


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def _error(status, message):
    return jsonify({"error": message}), status


def _gate_error(view, gate):
    """JSON error for a view that may not proceed, or None."""
    if gate in GATE_STATUS:
        return _error(*GATE_STATUS[gate])
    if gate is Gate.DENIED:
        failure = view.failure
        return _error(FAILURE_STATUS.get(failure.reason, 403), failure.description)
    return None


def _failure_response(view, body=None):
    failure = view.failure
    status = FAILURE_STATUS.get(failure.reason, 400)
    payload = {"error": failure.description}
    if body:
        payload.update(body)
    return jsonify(payload), status


def _json_object():
    data = request.get_json(force=True, silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def _admin_view():
    return AdminView(
        bound_store(),
        current_identity(),
        get_tracker(),
        loan_limit=current_app.config["ADMIN_LOAN_LIMIT"],
    )


@bp.errorhandler(DataStoreError)
def handle_datastore_error(e):
    logger.warning("API request %s failed: %s", request.path, e)
    status = 401 if isinstance(e, AuthenticationError) else 502
    return _error(status, str(e))


@bp.errorhandler(HTTPException)
def handle_http_error(e):
    return _error(e.code, e.description)


# ---------------------------------------------------------
# Health & auth
# ---------------------------------------------------------

@bp.get("/health")
def health():
    return jsonify(
        {
            "status": "ok",
            "service": "library_service",
            "backend": current_app.config["DATA_BACKEND"],
        }
    ), 200


@bp.post("/auth/sign-in")
def sign_in():
    data = _json_object()
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    if not email or not password:
        return _error(400, "email and password are required")

    identity = get_provider().sign_in(email, password)
    return jsonify({"user_id": identity.user_id, "email": identity.email})


@bp.post("/auth/sign-out")
def sign_out():
    get_provider().sign_out()
    return jsonify({"message": "Signed out"})


@bp.get("/profile")
def profile():
    view = DashboardView(bound_store(), current_identity())
    error = _gate_error(view, view.gate())
    if error:
        return error
    data = bound_store().get_profile(view.identity.user_id)
    if data is None:
        return _error(404, "Profile not found")
    return jsonify(data)


# ---------------------------------------------------------
# Catalog
# ---------------------------------------------------------

@bp.get("/books")
def list_books():
    """
    Catalog snapshot filtered client-side.
    - ?query=...  matches title/author/isbn (case-insensitive)
    """
    view = CatalogView(bound_store(), current_identity(), get_tracker(), query=request.args.get("query", ""))
    error = _gate_error(view, view.mount())
    if error:
        return error
    if view.failure:
        return _failure_response(view)
    return jsonify([dict(book, can_borrow=view.can_borrow(book)) for book in view.visible_books])


@bp.get("/categories")
def list_categories():
    view = CatalogView(bound_store(), current_identity())
    error = _gate_error(view, view.gate())
    if error:
        return error
    return jsonify(bound_store().list_categories())


@bp.post("/books")
def add_book():
    view = _admin_view()
    error = _gate_error(view, view.gate())
    if error:
        return error

    book = view.add_book(_json_object())
    if book is None:
        return _failure_response(view)
    return jsonify(book), 201


@bp.post("/books/<int:book_id>/borrow")
def borrow_book(book_id):
    view = CatalogView(
        bound_store(),
        current_identity(),
        get_tracker(),
        loan_period_days=current_app.config["LOAN_PERIOD_DAYS"],
    )
    error = _gate_error(view, view.mount())
    if error:
        return error

    result = view.borrow(book_id)
    if result is None or not result.success:
        body = result.to_dict() if result is not None else None
        return _failure_response(view, body)
    return jsonify(dict(result.to_dict(), book=view.find(book_id))), 201


# ---------------------------------------------------------
# Loans
# ---------------------------------------------------------

@bp.get("/loans/me")
def my_loans():
    view = DashboardView(bound_store(), current_identity())
    error = _gate_error(view, view.mount())
    if error:
        return error
    if view.failure:
        return _failure_response(view)
    return jsonify(
        {
            "profile": view.profile,
            "total_fines": float(view.total_fines),
            "loans": view.loans,
        }
    )


@bp.get("/loans")
def list_loans():
    view = _admin_view()
    error = _gate_error(view, view.mount())
    if error:
        return error
    if view.failure:
        return _failure_response(view)
    return jsonify(view.loans)


@bp.post("/loans/<int:loan_id>/return")
def return_loan(loan_id):
    view = _admin_view()
    error = _gate_error(view, view.gate())
    if error:
        return error

    result = view.return_loan(loan_id)
    if result is None or not result.success:
        body = result.to_dict() if result is not None else None
        return _failure_response(view, body)
    return jsonify(result.to_dict()), 200
