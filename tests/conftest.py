from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from vissreader.config import Settings
from vissreader.db.base import Base
from vissreader.db.session import create_engine, create_sessionmaker
from vissreader.errors import GatewayError
from vissreader.services.pricing import build_pricing_table
from vissreader.services.tbank import sign_params


TBANK_PASSWORD = 'test-password'


class FakeGateway:
    """In-process stand-in for the acquiring API."""

    def __init__(self) -> None:
        self.counter = 1000
        self.init_calls: List[Dict[str, Any]] = []
        self.state_calls: List[str] = []
        self.init_error: Exception | None = None
        self.states: Dict[str, str] = {}
        self.state_errors: List[Exception] = []

    async def init_payment(self, *, amount: Decimal, order_id: str, description: str) -> Dict[str, Any]:
        self.init_calls.append({'amount': amount, 'order_id': order_id, 'description': description})
        if self.init_error is not None:
            raise self.init_error
        self.counter += 1
        gateway_id = str(self.counter)
        self.states[gateway_id] = 'NEW'
        return {
            'Success': True,
            'Status': 'NEW',
            'PaymentId': gateway_id,
            'OrderId': order_id,
            'PaymentURL': f'https://pay.example/{gateway_id}',
        }

    async def get_state(self, gateway_payment_id: str) -> Dict[str, Any]:
        self.state_calls.append(gateway_payment_id)
        if self.state_errors:
            raise self.state_errors.pop(0)
        status = self.states.get(gateway_payment_id)
        if status is None:
            raise GatewayError('unknown payment', error_code='7')
        return {'Success': True, 'PaymentId': gateway_payment_id, 'Status': status}


class FakeImageProvider:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.error: Exception | None = None

    async def generate(self, prompt: str, model: str) -> str:
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        return f'https://img.example/{len(self.calls)}.png'


def signed_callback(order_id: str, gateway_id: str, status: str, amount: int = 30000, password: str = TBANK_PASSWORD) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'TerminalKey': 'TestTerminal',
        'OrderId': order_id,
        'Success': True,
        'Status': status,
        'PaymentId': gateway_id,
        'ErrorCode': '0',
        'Amount': amount,
        'CardId': 12345,
        'Pan': '430000******0777',
        'ExpDate': '1230',
    }
    payload['Token'] = sign_params(payload, password)
    return payload


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'vissreader.db'}",
        TBANK_TERMINAL_KEY='TestTerminal',
        TBANK_PASSWORD=TBANK_PASSWORD,
        TBANK_POLL_BACKOFF_SEQUENCE='0.5,1,2',
        PAYMENT_WATCH_ENABLED=False,
        WELCOME_BONUS_TOKENS=300,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def pricing():
    return build_pricing_table()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep
