"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

# --- Config env par défaut
os.environ.setdefault("DATABASE_URL", "sqlite:///./petcare_test.db")
os.environ.setdefault("API_KEY", "test-secret-key")
os.environ.setdefault("PSP_WEBHOOK_SECRET", "test-psp-secret")
os.environ.setdefault("PETCARE_ENV", "dev")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from app.main import app  # noqa: E402
from app.db import get_db  # noqa: E402
from app.models import Animal, PaymentMethod, User  # noqa: E402
from app.models.api_key import ApiKey, ApiScope  # noqa: E402
from app.services.payment_gateway import StubPaymentGateway, get_payment_gateway  # noqa: E402
from app.utils.apikey import hash_key  # noqa: E402

DB_PATH = Path("./petcare_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parents[1] / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Reset DB fichier au début de la session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)


# pysqlite: BEGIN explicite pour que les SAVEPOINT restent dans la transaction de test
@event.listens_for(engine, "connect")
def _disable_pysqlite_autobegin(dbapi_connection, connection_record) -> None:
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                                   future=True, expire_on_commit=False)

# --- (2) Construire le schéma via Alembic uniquement
_run_migrations()


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


class RecordingPaymentGateway(StubPaymentGateway):
    """Stub gateway that remembers the provider ids it created and canceled."""

    def __init__(self, provider_name: str = "LiqPay") -> None:
        super().__init__(provider_name)
        self.created: list[str] = []
        self.canceled: list[str] = []

    def create_recurring_charge(self, **kwargs) -> str:
        provider_subscription_id = super().create_recurring_charge(**kwargs)
        self.created.append(provider_subscription_id)
        return provider_subscription_id

    def cancel_recurring_charge(self, provider_subscription_id: str) -> None:
        super().cancel_recurring_charge(provider_subscription_id)
        self.canceled.append(provider_subscription_id)


@pytest.fixture
def make_gateway() -> Callable[..., RecordingPaymentGateway]:
    return RecordingPaymentGateway


@pytest.fixture
def gateway(make_gateway: Callable[..., RecordingPaymentGateway]) -> RecordingPaymentGateway:
    return make_gateway("LiqPay")


@pytest.fixture(autouse=True)
def override_dependencies(db_session: Session, gateway: RecordingPaymentGateway) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(name: str, key: str, scope: ApiScope = ApiScope.donor, is_active: bool = True) -> ApiKey:
        api_key = ApiKey(
            name=name,
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            scope=scope,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def donor_headers(make_api_key: Callable[..., ApiKey]) -> dict[str, str]:
    token = f"donor-{uuid4().hex}"
    make_api_key(name=f"donor-{uuid4().hex}", key=token, scope=ApiScope.donor)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(make_api_key: Callable[..., ApiKey]) -> dict[str, str]:
    token = f"admin-{uuid4().hex}"
    make_api_key(name=f"admin-{uuid4().hex}", key=token, scope=ApiScope.admin)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def payment_method(db_session: Session) -> PaymentMethod:
    """The provider registered for the stub gateway."""

    method = db_session.scalars(select(PaymentMethod).where(PaymentMethod.name == "LiqPay")).first()
    if method is None:
        method = PaymentMethod(name="LiqPay")
        db_session.add(method)
        db_session.commit()
    return method


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(prefix: str = "donor") -> User:
        suffix = uuid4().hex[:8]
        user = User(username=f"{prefix}-{suffix}", email=f"{prefix}-{suffix}@example.com")
        db_session.add(user)
        db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_animal(db_session: Session) -> Callable[..., Animal]:
    def _factory(name: str = "Barsik") -> Animal:
        animal = Animal(name=name, slug=f"{name.lower()}-{uuid4().hex[:8]}")
        db_session.add(animal)
        db_session.flush()
        return animal

    return _factory
