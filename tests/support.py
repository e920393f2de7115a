"""Shared fixtures: an isolated in-memory database and a scripted Questrade HTTP transport."""
import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401
from models.person import Person
from models.token import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, Token
from services.questrade.token_crypto import encrypt_token
from utils.common_helpers import utcnow

API_SERVER = "https://api01.iq.questrade.com/"
REFRESH_TOKEN = "refresh-token-aaaaaaaaaaaaaaaaaaaa"


def make_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def add_person(db, name="alice", *, with_tokens=True, access_expired=False, is_active=True):
    person = Person(person_name=name, display_name=name.title(), is_active=is_active, has_valid_token=with_tokens)
    db.add(person)
    if with_tokens:
        now = utcnow()
        db.add(Token(
            person_name=name,
            type=TOKEN_TYPE_REFRESH,
            encrypted_token=encrypt_token(REFRESH_TOKEN),
            api_server=API_SERVER,
            expires_at=now + timedelta(days=7),
        ))
        db.add(Token(
            person_name=name,
            type=TOKEN_TYPE_ACCESS,
            encrypted_token=encrypt_token("access-old"),
            api_server=API_SERVER,
            expires_at=now - timedelta(minutes=5) if access_expired else now + timedelta(minutes=30),
        ))
    db.commit()
    return person


class FakeQuestrade:
    """
    Route table for httpx.MockTransport keyed by URL path.

    Each value is a response dict, an httpx.Response, a callable taking the
    request, or a list consumed one item per call.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.token_exchanges = 0
        self.token_response = {
            "access_token": "access-new",
            "refresh_token": "refresh-token-rotated-bbbbbbbbbbbbbb",
            "api_server": API_SERVER,
            "expires_in": 1800,
            "token_type": "Bearer",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/oauth2/token":
            self.token_exchanges += 1
            return self._respond(self.routes.get(path, self.token_response), request)
        if path not in self.routes:
            return httpx.Response(404, json={"code": 1001, "message": f"no route for {path}"})
        return self._respond(self.routes[path], request)

    def _respond(self, route, request):
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            route = route(request)
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, Exception):
            raise route
        return httpx.Response(200, json=route)

    def api_calls(self, path):
        return [c for c in self.calls if c.url.path == path]

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self))
