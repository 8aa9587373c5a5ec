import itertools
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from marketplace_orders.engine import OrderLifecycleEngine
from marketplace_orders.errors import GatewayError
from marketplace_orders.schema import create_schema
from marketplace_orders.store import OrderStore

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple] = []

    async def notify(self, user_id, kind, order_id, message) -> bool:
        self.sent.append((user_id, kind, order_id, message))
        return True

    def kinds_for(self, user_id: str) -> list:
        return [kind for uid, kind, _, _ in self.sent if uid == user_id]


class FakeGateway:
    def __init__(self) -> None:
        self.sessions: list[str] = []
        self.refunds: list[tuple[str, int]] = []
        self.releases: list[tuple[str, int, str]] = []
        self.confirmations: dict = {}
        self.fail_sessions = False
        self.fail_settlements = False
        self.settlement_error: Exception | None = None

    async def initialize_session(self, buyer_email, amount, reference, metadata=None) -> str:
        if self.fail_sessions:
            raise GatewayError("gateway unavailable")
        self.sessions.append(reference)
        return f"https://checkout.example/{reference}"

    async def confirm(self, reference):
        return self.confirmations[reference]

    async def refund(self, reference, amount) -> None:
        if self.settlement_error is not None:
            raise self.settlement_error
        if self.fail_settlements:
            raise GatewayError("refund rejected")
        self.refunds.append((reference, amount))

    async def release(self, recipient_id, amount, reference) -> None:
        if self.settlement_error is not None:
            raise self.settlement_error
        if self.fail_settlements:
            raise GatewayError("transfer rejected")
        self.releases.append((recipient_id, amount, reference))


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    # One connection: transactions queue on the pool the way row locks
    # queue them on a server database.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        pool_size=1,
        max_overflow=0,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine) -> OrderStore:
    return OrderStore(async_sessionmaker(db_engine, expire_on_commit=False), read_attempts=1)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def engine(store, notifier, gateway, clock) -> OrderLifecycleEngine:
    return OrderLifecycleEngine(store, notifier, gateway, clock=clock)


@pytest.fixture
def make_order(store, engine):
    """Create an order on a fresh listing; paid=True also confirms payment."""
    counter = itertools.count(1)

    async def _make(buyer="B", seller="S", amount=15000, paid=False):
        item_ref = f"book-{next(counter)}"
        await store.add_item(item_ref)
        order = await engine.create_order(buyer, seller, item_ref, amount)
        if paid:
            order = (await engine.confirm_payment(order.id, order.payment_reference)).order
        return order

    return _make
