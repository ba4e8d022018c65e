"""
Shipyard - Test Configuration and Fixtures
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncGenerator, List, Optional
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from faker import Faker

# Set testing environment
os.environ['ENVIRONMENT'] = 'test'
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite:///./test.db'
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['AGENT_HOST'] = 'http://agent.test'
os.environ['AGENT_API_SECRET'] = 'test-agent-secret'

from shipyard.main import app
from shipyard.core.database import Base, get_db
from shipyard.core.security import UserIdentity, create_access_token
from shipyard.models.application import Application
from shipyard.models.prompt import Prompt, PromptKind
from shipyard.services.active_sessions import ActiveSessionService, get_active_session_service
from shipyard.services.agent_client import AgentClient, get_agent_client
from shipyard.services.conversation_cache import InMemoryConversationCache, get_conversation_cache
from shipyard.services.deployment import DeploymentTrigger, get_deployment_trigger
from shipyard.services.dev_logs import DevLogStore, get_dev_log_store
from shipyard.services.github_client import get_repository_host_factory

from mocks.mock_platform import MockAgent, MockDeploymentProvider, MockRepositoryHost

fake = Faker()

# Test database setup
TEST_DATABASE_URL = 'sqlite+aiosqlite:///./test.db'
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


@pytest.fixture(scope='function')
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test"""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def conversation_cache() -> InMemoryConversationCache:
    return InMemoryConversationCache()


@pytest.fixture
def session_service() -> ActiveSessionService:
    return ActiveSessionService(session_factory=TestSessionLocal, max_connections=50, inactivity_minutes=30)


@pytest.fixture
def mock_agent() -> MockAgent:
    return MockAgent()


@pytest.fixture
async def agent_client(mock_agent: MockAgent) -> AsyncGenerator[AgentClient, None]:
    http_client = AsyncClient(transport=mock_agent.transport())
    yield AgentClient(base_url='http://agent.test', api_secret='test-agent-secret', client=http_client)
    await http_client.aclose()


@pytest.fixture
def repository_host() -> MockRepositoryHost:
    return MockRepositoryHost()


@pytest.fixture
def deploy_provider() -> MockDeploymentProvider:
    return MockDeploymentProvider()


@pytest.fixture
def deployment_trigger(deploy_provider: MockDeploymentProvider) -> DeploymentTrigger:
    return DeploymentTrigger(session_factory=TestSessionLocal, provider=deploy_provider)


@pytest.fixture
def dev_log_store(tmp_path: Path) -> DevLogStore:
    return DevLogStore(base_dir=tmp_path / 'logs', enabled=True)


@pytest.fixture
async def client(
    db_session: AsyncSession,
    conversation_cache: InMemoryConversationCache,
    session_service: ActiveSessionService,
    agent_client: AgentClient,
    repository_host: MockRepositoryHost,
    deployment_trigger: DeploymentTrigger,
    dev_log_store: DevLogStore,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database and collaborator overrides"""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_conversation_cache] = lambda: conversation_cache
    app.dependency_overrides[get_active_session_service] = lambda: session_service
    app.dependency_overrides[get_agent_client] = lambda: agent_client
    app.dependency_overrides[get_repository_host_factory] = lambda: (lambda user: repository_host)
    app.dependency_overrides[get_deployment_trigger] = lambda: deployment_trigger
    app.dependency_overrides[get_dev_log_store] = lambda: dev_log_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def test_user() -> UserIdentity:
    """Authenticated caller"""
    return UserIdentity(
        user_id=str(fake.uuid4()),
        github_username=fake.user_name(),
        github_access_token='gho_test_token',
        email=fake.email(),
    )


@pytest.fixture
def staff_user() -> UserIdentity:
    """Caller with an elevated role"""
    return UserIdentity(
        user_id=str(fake.uuid4()),
        github_username=fake.user_name(),
        github_access_token='gho_staff_token',
        email=fake.email(),
        role='staff',
    )


def make_auth_headers(user: UserIdentity) -> dict:
    token_data = {
        'sub': user.user_id,
        'github_username': user.github_username,
        'github_access_token': user.github_access_token,
        'email': user.email,
    }
    if user.role:
        token_data['role'] = user.role
    token = create_access_token(token_data)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def auth_headers(test_user: UserIdentity) -> dict:
    """Generate authentication headers for test user"""
    return make_auth_headers(test_user)


@pytest.fixture
def create_application(db_session: AsyncSession):
    """Factory inserting an application (and optional prompts) owned by a user"""
    async def _create(
        owner: UserIdentity,
        turns: Optional[List[tuple]] = None,
        created_at: Optional[datetime] = None,
        **fields
    ) -> Application:
        app_id = str(fake.uuid4())
        values = {
            'id': app_id,
            'name': fake.sentence(nb_words=4),
            'owner_id': owner.user_id,
            'trace_id': f"app-{app_id}.req-{fake.pystr(min_chars=8, max_chars=8)}",
            'app_name': f"app-{fake.pystr(min_chars=6, max_chars=6).lower()}",
            'github_username': owner.github_username,
            'repository_url': f"https://github.com/{owner.github_username}/repo",
        }
        values.update(fields)
        application = Application(**values)
        db_session.add(application)
        await db_session.flush()

        base_time = created_at or datetime.utcnow() - timedelta(minutes=len(turns or []) + 1)
        for index, (kind, text) in enumerate(turns or []):
            db_session.add(Prompt(
                app_id=app_id,
                kind=kind.value if isinstance(kind, PromptKind) else kind,
                prompt=text,
                created_at=base_time + timedelta(seconds=index),
            ))

        await db_session.commit()
        await db_session.refresh(application)
        return application

    return _create


@pytest.fixture(autouse=True)
def cleanup_build_dirs():
    """Remove materialized builds and clones left in the temp dir"""
    yield
    tmp = Path(tempfile.gettempdir())
    for pattern in ('shipyard-build-*', 'shipyard-test-clone-*'):
        for leftover in tmp.glob(pattern):
            shutil.rmtree(leftover, ignore_errors=True)
