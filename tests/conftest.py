"""Test fixtures — a throwaway SQLite database per test, fake Google, in-memory bus.

Learn: Testing pattern for async SQLAlchemy + FastAPI without external services:

1. Each test gets its own SQLite *file* database (tmp_path) built from the
   ORM metadata. A file (not :memory:) lets several sessions — several
   connections — hit the same data, which the concurrency tests need.
   The busy timeout makes concurrent writers queue instead of failing.
2. The event bus is an in-memory EventBus double that records entries and
   can be switched to fail, so tests assert exactly which events went out.
3. Google is an httpx.MockTransport: codes map to userinfo payloads, and
   the fake can be told to answer 5xx or drop the connection.
4. The HTTP client runs the real app through ASGITransport with get_db,
   the bus and the provider client overridden.
"""

import os
import tempfile
import urllib.parse
import uuid
from datetime import timedelta

# Must be set before anything imports tessera.config
os.environ["TESSERA_DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='tessera-tests-')}/app.db"
)
os.environ.setdefault("TESSERA_JWT_SECRET", "test-secret-not-for-production-0123456789")
os.environ.setdefault("TESSERA_GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("TESSERA_GOOGLE_CLIENT_SECRET", "test-client-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tessera.api.deps import get_event_bus, get_http_client  # noqa: E402
from tessera.db.engine import get_db  # noqa: E402
from tessera.db.models import Base, LoginState, Role, User, UserRole, utcnow  # noqa: E402
from tessera.errors import UnavailableError  # noqa: E402
from tessera.events.publisher import EventPublisher  # noqa: E402
from tessera.main import app  # noqa: E402
from tessera.services.rbac_service import seed_default_roles  # noqa: E402


# ═══════════════════════════════════════════════════════════
# Doubles
# ═══════════════════════════════════════════════════════════


class InMemoryBus:
    """EventBus double. Records every accepted entry; `fail` makes it refuse."""

    def __init__(self):
        self.entries: list[tuple[str, dict[str, str]]] = []
        self.fail = False

    async def append(self, event_type: str, fields: dict[str, str]) -> str:
        if self.fail:
            raise UnavailableError("Event bus unavailable: test double is down")
        self.entries.append((event_type, dict(fields)))
        return f"{len(self.entries)}-0"

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.entries]

    def of_type(self, event_type: str) -> list[dict[str, str]]:
        return [fields for t, fields in self.entries if t == event_type]


class FakeGoogle:
    """Token + userinfo endpoints behind httpx.MockTransport.

    `codes` maps an authorization code to the userinfo it resolves to.
    Unknown codes get 400 invalid_grant, like the real endpoint.
    """

    def __init__(self):
        self.codes: dict[str, dict] = {}
        self.token_status: int | None = None  # force a status on /token
        self.token_response: httpx.Response | None = None  # force a whole response
        self.unreachable = False
        self.token_calls = 0

    def add_code(self, code: str, sub: str, email: str, name: str = "Test User", **extra) -> None:
        self.codes[code] = {
            "sub": sub,
            "email": email,
            "email_verified": True,
            "name": name,
            "picture": f"https://example.com/{sub}.png",
            **extra,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path == "/token":
            self.token_calls += 1
            if self.token_response is not None:
                return self.token_response
            if self.token_status is not None:
                return httpx.Response(self.token_status, json={"error": "backend_error"})
            form = urllib.parse.parse_qs(request.content.decode())
            code = form.get("code", [""])[0]
            if code not in self.codes:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Bad Request"},
                )
            return httpx.Response(200, json={"access_token": f"at-{code}", "token_type": "Bearer"})

        if request.url.path == "/v1/userinfo":
            code = request.headers["Authorization"].removeprefix("Bearer at-")
            return httpx.Response(200, json=self.codes[code])

        return httpx.Response(404)


# ═══════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """Fresh schema in a per-test SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tessera.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    """Session with the default roles already seeded."""
    async with session_factory() as session:
        await seed_default_roles(session)
        yield session


@pytest.fixture()
def make_user(db_session):
    """Factory: insert a user directly, optionally holding some roles."""

    async def _make_user(roles: tuple[str, ...] = (), email: str | None = None) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            provider="google",
            subject=f"sub-{suffix}",
            email=email or f"user-{suffix}@example.com",
            name=f"User {suffix}",
            picture="",
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        if roles:
            result = await db_session.execute(select(Role).where(Role.name.in_(roles)))
            for role in result.scalars().all():
                db_session.add(UserRole(user_id=user.id, role_id=role.id))
            await db_session.commit()
        return user

    return _make_user


@pytest.fixture()
def issue_state(db_session):
    """Register an anti-forgery state as if a login URL had been handed out."""

    async def _issue_state(state: str | None = None, ttl: timedelta = timedelta(minutes=10)) -> str:
        state = state or uuid.uuid4().hex
        now = utcnow()
        db_session.add(LoginState(state=state, created_at=now, expires_at=now + ttl))
        await db_session.commit()
        return state

    return _issue_state


# ═══════════════════════════════════════════════════════════
# Bus + provider
# ═══════════════════════════════════════════════════════════


@pytest.fixture()
def bus():
    return InMemoryBus()


@pytest.fixture()
def publisher(bus):
    return EventPublisher(bus, timeout=1.0)


@pytest.fixture()
def google():
    return FakeGoogle()


@pytest_asyncio.fixture()
async def http(google):
    async with httpx.AsyncClient(transport=httpx.MockTransport(google.handler)) as client:
        yield client


# ═══════════════════════════════════════════════════════════
# HTTP client
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def client(db_session, session_factory, bus, http):
    """App client: real auth pipeline, per-request sessions on the test DB.

    Learn: Unlike a shared-session override, every request opens its own
    session from the test factory — the same shape production has, so
    two concurrent requests really use two connections.
    """

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_http_client] = lambda: http

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
