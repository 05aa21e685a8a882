"""
Pytest Configuration and Shared Fixtures

Every test gets its own SQLite file database so concurrent sessions behave
like they do against PostgreSQL.
"""

import pytest
import pytest_asyncio

from domain_qualifier.database import (
    BulkAnalysisDomain,
    Client,
    TargetPage,
    build_session_factory,
    create_db_engine,
    get_db_context,
    init_db,
)
from domain_qualifier.utils.config import Settings


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh schema."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'qualifier.db'}")
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATAFORSEO_LOGIN="login@example.com",
        DATAFORSEO_PASSWORD="secret",
        ANTHROPIC_API_KEY="test-key",
    )


@pytest_asyncio.fixture
async def client_id(session_factory) -> str:
    async with get_db_context(session_factory) as db:
        client = Client(name="Client Co")
        db.add(client)
        await db.flush()
        return client.id


@pytest_asyncio.fixture
async def widgets_page(session_factory, client_id) -> TargetPage:
    """https://client.com/widgets with two keywords."""
    async with get_db_context(session_factory) as db:
        page = TargetPage(
            client_id=client_id,
            url="https://client.com/widgets",
            keywords="best widgets, buy widgets online",
            description="Widget category page",
        )
        db.add(page)
        await db.flush()
        return page


@pytest.fixture
def make_domain(session_factory):
    """Factory: await make_domain(client_id, "example.com", **column_overrides)."""
    async def _make(client_id: str, domain: str = "example.com", **fields) -> BulkAnalysisDomain:
        async with get_db_context(session_factory) as db:
            row = BulkAnalysisDomain(client_id=client_id, domain=domain, **fields)
            db.add(row)
            await db.flush()
            return row
    return _make


@pytest.fixture
def load_domain(session_factory):
    """Factory: await load_domain(domain_id) -> fresh BulkAnalysisDomain row."""
    async def _load(domain_id: str) -> BulkAnalysisDomain:
        async with get_db_context(session_factory) as db:
            return await db.get(BulkAnalysisDomain, domain_id)
    return _load

