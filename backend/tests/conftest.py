import asyncio
import os
import tempfile
import uuid

# Configure before anything from coderoom is imported
_TMP_DIR = tempfile.mkdtemp(prefix="coderoom-tests-")
os.environ.update({
    "DATABASE_URL": f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}",
    "JWT_SECRET": "test-secret-key-that-is-long-enough-for-hs256",
    "REDIS_ENABLED": "false",
    "RATE_LIMIT_ENABLED": "false",
    "RATE_LIMIT_USE_REDIS": "false",
    "LOG_DIR": os.path.join(_TMP_DIR, "logs"),
    "LOG_LEVEL": "WARNING",
    "WS_DISCONNECT_GRACE_SECONDS": "0.3",
    "WS_HEARTBEAT_INTERVAL_SECONDS": "3600",
    "EXPIRE_SWEEP_INTERVAL_SECONDS": "3600",
    "PERSIST_RETRY_BASE_DELAY": "0.01",
    "PERSIST_RETRY_MAX_DELAY": "0.02",
})

import pytest  # noqa: E402
from coderoom.database import Base, engine, async_session  # noqa: E402
from coderoom.models import Problem  # noqa: E402
from coderoom.services.room_state import Principal  # noqa: E402
from coderoom.services.auth_service import AuthService  # noqa: E402
from coderoom.utils.security import create_tokens  # noqa: E402
from helpers import PASSWORD  # noqa: E402


async def _reset_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def _seed():
    users = {}
    async with async_session() as session:
        auth_service = AuthService(session)
        for name, first, last in (
            ("alice", "Alice", "Host"),
            ("bob", "Bob", None),
            ("carol", None, None),
        ):
            users[name] = await auth_service.create_user(
                username=name,
                email=f"{name}@example.com",
                password=PASSWORD,
                first_name=first,
                last_name=last,
            )
        problem = Problem(
            title="Two Sum",
            difficulty="easy",
            tags=["array"],
            start_code={"javascript": "function twoSum(nums, target) {}", "java": "class Solution {}"},
        )
        session.add(problem)
        await session.commit()
        return {name: Principal.from_user(u) for name, u in users.items()}, str(problem.id)


class Seed:
    def __init__(self, principals: dict[str, Principal], problem_id: str):
        self.principals = principals
        self.problem_id = problem_id

    def principal(self, name: str) -> Principal:
        return self.principals[name]

    def token(self, name: str) -> str:
        return create_tokens(self.principals[name].user_id)["access_token"]

    def headers(self, name: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token(name)}"}


@pytest.fixture
def seed() -> Seed:
    """Fresh schema with three users and one problem (sync tests)."""
    async def prepare():
        await _reset_schema()
        return await _seed()

    principals, problem_id = asyncio.run(prepare())
    return Seed(principals, problem_id)


@pytest.fixture
async def aseed() -> Seed:
    """Same as ``seed`` for async tests."""
    await _reset_schema()
    principals, problem_id = await _seed()
    return Seed(principals, problem_id)


@pytest.fixture
def unknown_problem_id() -> str:
    return str(uuid.uuid4())
