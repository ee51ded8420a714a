"""
Managed backend: PostgREST tables + RPCs and GoTrue auth over HTTP.

The borrow and return transactions run inside the backend's SQL functions;
this client only calls them by name and relays their JSON results.
"""
import logging
from dataclasses import replace
from datetime import datetime

import requests

from .datastore import (
    AuthenticationError,
    BorrowResult,
    DataStore,
    DataStoreError,
    DuplicateBookError,
    Identity,
    ReturnResult,
)

logger = logging.getLogger(__name__)

BOOK_COLUMNS = (
    "isbn",
    "title",
    "author",
    "category_id",
    "description",
    "publication_year",
    "cover_image_url",
    "total_copies",
)


class RestDataStore(DataStore):
    def __init__(
        self,
        base_url,
        anon_key,
        borrow_rpc="issue_book_transaction",
        return_rpc="return_book_transaction",
        timeout=10,
        access_token=None,
        http=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.borrow_rpc = borrow_rpc
        self.return_rpc = return_rpc
        self.timeout = timeout
        self.access_token = access_token
        self.http = http or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            config["SUPABASE_URL"],
            config["SUPABASE_ANON_KEY"],
            borrow_rpc=config.get("BORROW_RPC", "issue_book_transaction"),
            return_rpc=config.get("RETURN_RPC", "return_book_transaction"),
            timeout=config.get("REST_TIMEOUT", 10),
        )

    def for_identity(self, identity):
        token = identity.access_token if identity else None
        return RestDataStore(
            self.base_url,
            self.anon_key,
            borrow_rpc=self.borrow_rpc,
            return_rpc=self.return_rpc,
            timeout=self.timeout,
            access_token=token,
            http=self.http,
        )

    # ----------------- HTTP plumbing -----------------

    def _headers(self, extra=None, token=None):
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.access_token or self.anon_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(
        self, method, path, params=None, json=None, headers=None, token=None, conflict=DataStoreError
    ):
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(headers, token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise DataStoreError(f"Backend unreachable: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthenticationError(_error_message(resp))
        if resp.status_code == 409:
            raise conflict(_error_message(resp))
        if not resp.ok:
            logger.warning("%s %s -> %s %s", method, url, resp.status_code, resp.text.strip())
            raise DataStoreError(_error_message(resp))
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def _rest(self, method, table, **kwargs):
        return self._request(method, f"/rest/v1/{table}", **kwargs)

    def _rpc(self, name, payload):
        return self._request("POST", f"/rest/v1/rpc/{name}", json=payload)

    # ----------------- catalog -----------------

    def list_books(self):
        return self._rest(
            "GET", "books", params={"select": "*,categories(name)", "order": "title.asc"}
        ) or []

    def get_book(self, book_id):
        rows = self._rest(
            "GET",
            "books",
            params={"select": "*,categories(name)", "id": f"eq.{book_id}"},
        ) or []
        return rows[0] if rows else None

    def list_categories(self):
        return self._rest("GET", "categories", params={"select": "*", "order": "name.asc"}) or []

    def insert_book(self, fields):
        row = {key: fields.get(key) for key in BOOK_COLUMNS if key in fields}
        row["available_copies"] = row.get("total_copies", 1)
        created = self._rest(
            "POST",
            "books",
            json=[row],
            headers={"Prefer": "return=representation"},
            conflict=DuplicateBookError,
        )
        logger.info("Added book %s (%s)", row.get("isbn"), row.get("title"))
        return created[0] if created else row

    # ----------------- loans -----------------

    def list_loans(self, limit=50):
        return self._rest(
            "GET",
            "loans",
            params={
                "select": "*,books(title,author),profiles(first_name,last_name,email)",
                "order": "issue_date.desc",
                "limit": str(limit),
            },
        ) or []

    def list_active_loans(self, user_id):
        return self._rest(
            "GET",
            "loans",
            params={
                "select": "id,due_date,status,books(title,author,cover_image_url)",
                "user_id": f"eq.{user_id}",
                "status": "in.(active,overdue)",
                "order": "due_date.asc",
            },
        ) or []

    def borrow(self, book_id, user_id, due_date):
        if isinstance(due_date, datetime):
            due_date = due_date.isoformat()
        payload = self._rpc(
            self.borrow_rpc,
            {"p_book_id": book_id, "p_user_id": user_id, "p_due_date": due_date},
        )
        return BorrowResult.from_payload(payload)

    def return_loan(self, loan_id):
        payload = self._rpc(self.return_rpc, {"p_loan_id": loan_id})
        return ReturnResult.from_payload(payload)

    # ----------------- profiles & identity -----------------

    def get_profile(self, user_id):
        rows = self._rest("GET", "profiles", params={"select": "*", "id": f"eq.{user_id}"}) or []
        return rows[0] if rows else None

    def sign_in(self, email, password):
        data = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return _identity_from_session(data)

    def sign_up(self, email, password, first_name=None, last_name=None):
        data = self._request(
            "POST",
            "/auth/v1/signup",
            json={
                "email": email,
                "password": password,
                "data": {"first_name": first_name, "last_name": last_name},
            },
        )
        if not data or not data.get("access_token"):
            raise AuthenticationError("Check your email to confirm your account")
        return _identity_from_session(data)

    def resolve_identity(self, stored):
        if not stored or not stored.get("access_token"):
            return None
        try:
            user = self._request("GET", "/auth/v1/user", token=stored["access_token"])
        except AuthenticationError:
            return None
        identity = Identity(user_id=user["id"], email=user.get("email"))
        return replace(identity, access_token=stored["access_token"])

    def sign_out(self, identity):
        if identity is None or not identity.access_token:
            return
        try:
            self._request("POST", "/auth/v1/logout", token=identity.access_token)
        except DataStoreError as e:
            # the local session is cleared regardless
            logger.warning("Remote sign-out failed: %s", e)


def _identity_from_session(data):
    user = (data or {}).get("user") or {}
    if not user.get("id"):
        raise AuthenticationError("Sign-in response carried no user")
    return Identity(user_id=user["id"], email=user.get("email"), access_token=data.get("access_token"))


def _error_message(resp):
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip() or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {resp.status_code}"
