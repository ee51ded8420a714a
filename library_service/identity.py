"""
Central identity state.

Each request starts with ``IdentityProvider.load`` (init) and ends a session
with ``IdentityProvider.sign_out`` (teardown). Views only read the result via
``current_identity()``; nothing below this module caches roles or users.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app, g, session

from .datastore import DataStoreError, Identity

logger = logging.getLogger(__name__)

SESSION_KEY = "identity"


@dataclass(frozen=True)
class IdentityState:
    status: str  # "loading", "anonymous" or "authenticated"
    identity: Optional[Identity] = None

    @property
    def loading(self):
        return self.status == "loading"

    @property
    def authenticated(self):
        return self.status == "authenticated" and self.identity is not None

    @property
    def user_id(self):
        return self.identity.user_id if self.identity else None

    @property
    def email(self):
        return self.identity.email if self.identity else None


LOADING = IdentityState("loading")
ANONYMOUS = IdentityState("anonymous")


def authenticated(identity):
    return IdentityState("authenticated", identity)


class IdentityProvider:
    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        app.extensions["identity"] = self
        app.before_request(self.load)

    def load(self):
        g.identity_state = self.resolve(session.get(SESSION_KEY))

    def resolve(self, stored):
        if not stored:
            return ANONYMOUS
        try:
            identity = get_store().resolve_identity(stored)
        except DataStoreError as e:
            # Can't tell whether the session is still valid; stay in loading.
            logger.warning("Identity lookup failed: %s", e)
            return LOADING
        if identity is None:
            session.pop(SESSION_KEY, None)
            return ANONYMOUS
        return authenticated(identity)

    def sign_in(self, email, password):
        identity = get_store().sign_in(email, password)
        self._start(identity)
        logger.info("Signed in %s", identity.user_id)
        return identity

    def sign_up(self, email, password, first_name=None, last_name=None):
        identity = get_store().sign_up(email, password, first_name, last_name)
        self._start(identity)
        logger.info("Signed up %s", identity.user_id)
        return identity

    def sign_out(self):
        state = current_identity()
        if state.identity is not None:
            get_store().sign_out(state.identity)
            logger.info("Signed out %s", state.user_id)
        session.pop(SESSION_KEY, None)
        g.identity_state = ANONYMOUS

    def _start(self, identity):
        session[SESSION_KEY] = {
            "user_id": identity.user_id,
            "email": identity.email,
            "access_token": identity.access_token,
        }
        g.identity_state = authenticated(identity)


def current_identity():
    return g.get("identity_state", LOADING)


def get_provider():
    return current_app.extensions["identity"]


def get_store():
    return current_app.extensions["datastore"]


def get_tracker():
    return current_app.extensions["inflight"]


def bound_store():
    """The data store acting on behalf of the current identity."""
    return get_store().for_identity(current_identity().identity)
