import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from vissreader.db.models import Payment, PaymentStatus
from vissreader.errors import GatewayError
from vissreader.services.image_client import ImageError
from vissreader.web.app import create_app

from tests.conftest import signed_callback


@pytest_asyncio.fixture
async def client(settings, sessionmaker, gateway, image_provider, pricing):
    app = create_app(
        settings=settings,
        sessionmaker=sessionmaker,
        gateway=gateway,
        image_provider=image_provider,
        pricing=pricing,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url='http://testserver') as c:
        yield c


def _image_body(**overrides):
    body = {
        'deviceId': 'device-1',
        'bookTitle': 'Anna Karenina',
        'author': 'Leo Tolstoy',
        'textChunk': 'The train pulled into the snowy station.',
    }
    body.update(overrides)
    return body


async def test_health(client):
    resp = await client.get('/health')
    assert resp.status_code == 200
    assert resp.json()['status'] == 'ok'


async def test_balance_creates_user_with_bonus(client):
    resp = await client.get('/api/payments/balance', params={'deviceId': 'device-1'})

    assert resp.status_code == 200
    assert resp.json()['balance'] == 300
    again = await client.get('/api/payments/balance', params={'deviceId': 'device-1'})
    assert again.json()['userId'] == resp.json()['userId']


async def test_balance_requires_device_id(client):
    resp = await client.get('/api/payments/balance')
    assert resp.status_code == 400
    assert resp.json()['error'] == 'validation_error'


async def test_pricing(client):
    resp = await client.get('/api/payments/pricing')

    tiers = {tier['id']: tier for tier in resp.json()['pricing']}
    assert tiers['tier1']['tokens'] == 1000
    assert tiers['tier1']['price'] == 300.0
    assert tiers['tier2']['popular'] is True


async def test_create_payment_then_callback_and_status(client):
    created = await client.post('/api/payments/create', json={'deviceId': 'device-1', 'tierId': 'tier1'})
    assert created.status_code == 200
    body = created.json()
    assert body['status'] == 'processing'
    assert body['tokensAmount'] == 1000
    assert body['amount'] == 300.0

    status = await client.get(f"/api/payments/status/{body['paymentId']}")
    gateway_id = body['paymentUrl'].rsplit('/', 1)[-1]
    assert status.json()['payment']['status'] == 'processing'

    callback = await client.post(
        '/api/payments/tbank/callback',
        json=signed_callback(body['paymentId'], gateway_id, 'CONFIRMED'),
    )
    assert callback.status_code == 200
    assert callback.text == 'OK'

    status = await client.get(f"/api/payments/status/{body['paymentId']}")
    assert status.json()['payment']['status'] == 'completed'
    balance = await client.get('/api/payments/balance', params={'deviceId': 'device-1'})
    assert balance.json()['balance'] == 1300

    history = await client.get('/api/payments/transactions', params={'deviceId': 'device-1', 'limit': 10})
    rows = history.json()['transactions']
    assert history.json()['count'] == 2
    assert rows[0]['type'] == 'purchase'
    assert rows[0]['amount'] == 1000


async def test_create_payment_with_custom_amount(client):
    resp = await client.post(
        '/api/payments/create',
        json={'deviceId': 'device-1', 'tokensAmount': 500, 'amount': 150},
    )
    assert resp.status_code == 200
    assert resp.json()['tokensAmount'] == 500


@pytest.mark.parametrize(
    'body',
    [
        {'tierId': 'tier1'},
        {'deviceId': 'device-1', 'tierId': 'nope'},
        {'deviceId': 'device-1', 'tokensAmount': 0, 'amount': 10},
        {'deviceId': 'device-1', 'tokensAmount': 10},
        {'deviceId': 'device-1', 'tokensAmount': 10, 'amount': -1},
    ],
)
async def test_create_payment_validation(client, gateway, body):
    resp = await client.post('/api/payments/create', json=body)

    assert resp.status_code == 400
    assert gateway.init_calls == []


async def test_create_payment_gateway_failure(client, gateway, sessionmaker):
    gateway.init_error = GatewayError('Init_rejected:Terminal blocked', error_code='9999')

    resp = await client.post('/api/payments/create', json={'deviceId': 'device-1', 'tierId': 'tier1'})

    assert resp.status_code == 500
    assert 'Terminal blocked' in resp.json()['detail']
    async with sessionmaker() as session:
        payment = (await session.execute(select(Payment))).scalar_one()
    assert payment.status == PaymentStatus.FAILED.value


async def test_status_unknown_payment(client):
    resp = await client.get('/api/payments/status/payment_missing')
    assert resp.status_code == 404


@pytest.mark.parametrize(
    'payload',
    [
        {'OrderId': 'x', 'Status': 'CONFIRMED', 'Token': 'bad'},
        signed_callback('payment_unknown', '1', 'CONFIRMED'),
        {},
    ],
)
async def test_callback_always_acknowledged(client, payload):
    resp = await client.post('/api/payments/tbank/callback', json=payload)

    assert resp.status_code == 200
    assert resp.text == 'OK'


async def test_callback_with_garbage_body_is_acknowledged(client):
    resp = await client.post('/api/payments/tbank/callback', content=b'not json')
    assert resp.status_code == 200


async def test_success_redirect(client):
    resp = await client.get('/api/payments/tbank/success', params={'OrderId': 'payment_1', 'PaymentId': '77'})

    assert resp.status_code == 302
    assert resp.headers['location'] == 'vissreader://payment/success?orderId=payment_1&paymentId=77'


async def test_failure_redirect_and_page(client):
    redirect = await client.get('/api/payments/tbank/failure', params={'order_id': 'payment_1'})
    page = await client.get('/api/payments/tbank/failure')

    assert redirect.headers['location'] == 'vissreader://payment/failure?orderId=payment_1'
    assert page.status_code == 200
    assert '<h1>' in page.text


async def test_generate_image_charges_and_caches(client, image_provider):
    first = await client.post('/api/generate-image', json=_image_body())
    second = await client.post('/api/generate-image', json=_image_body())

    assert first.status_code == 200
    assert first.json()['charged'] is True
    assert first.json()['cost'] == 25
    assert first.json()['balance'] == 275
    assert second.json()['cached'] is True
    assert second.json()['charged'] is False
    assert second.json()['balance'] == 275
    assert len(image_provider.calls) == 1


async def test_generate_image_economy_mode(client):
    resp = await client.post('/api/generate-image', params={'mode': 'economy'}, json=_image_body())
    assert resp.json()['cost'] == 5
    assert resp.json()['balance'] == 295


async def test_generate_image_insufficient_funds(client, sessionmaker, settings):
    from vissreader.services.balance import BalanceService

    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        user = await service.ensure_user('device-1')
        await service.debit(user.id, 295, 'setup')
        await session.commit()

    resp = await client.post('/api/generate-image', params={'mode': 'economy'}, json=_image_body(textChunk='other'))
    assert resp.status_code == 200

    resp = await client.post('/api/generate-image', json=_image_body(textChunk='another'))
    assert resp.status_code == 402
    assert resp.json()['balance'] == 0
    assert resp.json()['required'] == 25


async def test_generate_image_validation(client):
    resp = await client.post('/api/generate-image', json=_image_body(bookTitle='t' * 101))
    assert resp.status_code == 400


async def test_generate_image_provider_failures(client, image_provider):
    image_provider.error = ImageError('rate limited', status_code=429)
    limited = await client.post('/api/generate-image', json=_image_body())

    image_provider.error = ImageError('upstream broke', status_code=500)
    broken = await client.post('/api/generate-image', json=_image_body())

    balance = await client.get('/api/payments/balance', params={'deviceId': 'device-1'})
    assert limited.status_code == 429
    assert broken.status_code == 502
    assert balance.json()['balance'] == 300
