import sys
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from loyalty_api.app import create_app  # noqa: E402
from loyalty_api.core.settings import Settings  # noqa: E402
from loyalty_api.db.base import Base  # noqa: E402
from loyalty_api.db.session import build_engine, build_session_factory, get_session  # noqa: E402
import loyalty_api.models  # noqa: E402,F401
from loyalty_api.models.loyalty import Badge, BadgeCriterion, LedgerEventType  # noqa: E402
from loyalty_api.services.loyalty import BalanceProjector, LedgerStore, LoyaltyPolicy  # noqa: E402

TEST_API_KEY = "test-checkout-key"


def _test_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "checkout_api_key": TEST_API_KEY,
        "tracing_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return _test_settings()


@pytest.fixture
def loyalty_policy(settings) -> LoyaltyPolicy:
    return LoyaltyPolicy.from_settings(settings)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed store so concurrent sessions use separate connections."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, settings):
    app = create_app(settings)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
        await app.state.engine.dispose()


@pytest.fixture
def seed_points(loyalty_policy):
    """Credit points through the ledger and projector, as production code does."""

    async def _seed(
        session: AsyncSession,
        user_id,
        points: int,
        *,
        event_type: LedgerEventType = LedgerEventType.BIRTHDAY,
    ) -> None:
        projector = BalanceProjector(session, loyalty_policy.tiers)
        await projector.ensure_account(user_id)
        if points:
            await LedgerStore(session).append(
                user_id=user_id,
                event_type=event_type,
                amount=points,
                idempotency_key=f"seed:{uuid4()}",
                metadata={"seed": True},
            )
            await projector.apply(user_id, points)
        await session.commit()

    return _seed


@pytest.fixture
def seed_badge():
    async def _seed(
        session: AsyncSession,
        code: str,
        criterion: BadgeCriterion,
        *,
        threshold: int = 1,
        points_reward: int = 0,
    ) -> Badge:
        badge = Badge(
            code=code,
            name=code.replace("_", " ").title(),
            criterion=criterion,
            threshold=threshold,
            points_reward=points_reward,
            is_active=True,
        )
        session.add(badge)
        await session.commit()
        return badge

    return _seed
