from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional

import httpx

from vissreader.config import Settings, get_settings
from vissreader.db.models import PaymentStatus
from vissreader.errors import GatewayError
from vissreader.utils.logging import get_logger


logger = get_logger('tbank')

SIGNATURE_FIELDS = {'Token', 'token'}

GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    'NEW': PaymentStatus.PENDING,
    'FORM_SHOWED': PaymentStatus.PENDING,
    'PREAUTHORIZING': PaymentStatus.PROCESSING,
    'AUTHORIZING': PaymentStatus.PROCESSING,
    'CONFIRMING': PaymentStatus.PROCESSING,
    'CONFIRMED': PaymentStatus.COMPLETED,
    'AUTHORIZED': PaymentStatus.COMPLETED,
    'REJECTED': PaymentStatus.FAILED,
    'AUTH_FAIL': PaymentStatus.FAILED,
    'CANCELED': PaymentStatus.CANCELLED,
}


class TBankError(GatewayError):
    pass


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    return str(value)


def build_sign_string(params: Mapping[str, Any], password: str) -> str:
    """Canonical string for the request/notification ``Token``.

    Every top-level key except the token itself, sorted by key, rendered as
    ``key=value`` and joined with ``&``; nested objects (``DATA``, ``Receipt``)
    are not part of the signature. The shared secret goes last.
    """
    pairs = [
        f'{key}={_render_value(params[key])}'
        for key in sorted(params)
        if key not in SIGNATURE_FIELDS and not isinstance(params[key], (dict, list, tuple))
    ]
    pairs.append(f'Password={password}')
    return '&'.join(pairs)


def sign_params(params: Mapping[str, Any], password: str) -> str:
    return hashlib.sha256(build_sign_string(params, password).encode('utf-8')).hexdigest()


def verify_signature(payload: Mapping[str, Any], password: str) -> bool:
    if not password:
        return False
    received = str(payload.get('Token') or payload.get('token') or '').strip().lower()
    if not received:
        return False
    expected = sign_params(payload, password)
    return hmac.compare_digest(expected, received)


def map_gateway_status(status: Any) -> Optional[PaymentStatus]:
    return GATEWAY_STATUS_MAP.get(str(status or '').strip().upper())


def to_kopecks(amount: Decimal | float | int | str) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


class TBankClient:
    def __init__(
        self,
        terminal_key: str,
        password: str,
        base_url: str = 'https://securepayments.tbank.ru/api/v1',
        success_url: str = '',
        failure_url: str = '',
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.terminal_key = terminal_key.strip()
        self.password = password.strip()
        self.base_url = base_url.rstrip('/')
        self.success_url = success_url
        self.failure_url = failure_url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'TBankClient':
        settings = settings or get_settings()
        return cls(
            terminal_key=settings.tbank_terminal_key,
            password=settings.tbank_password,
            base_url=settings.tbank_api_url,
            success_url=settings.tbank_success_redirect(),
            failure_url=settings.tbank_failure_redirect(),
            timeout=settings.tbank_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _ensure_configured(self) -> None:
        if not self.terminal_key or not self.password:
            raise TBankError('tbank_not_configured')

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        self._ensure_configured()
        body = {'TerminalKey': self.terminal_key, **params}
        body['Token'] = sign_params(body, self.password)
        try:
            resp = await self._client.post(
                f'{self.base_url}/{method}',
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TBankError(f'{method}_timeout', transient=True) from exc
        except httpx.HTTPError as exc:
            raise TBankError(f'{method}_transport_failed:{exc}', transient=True) from exc

        if resp.status_code >= 400:
            raise TBankError(
                f'{method}_http_failed:{resp.text[:500]}',
                status_code=resp.status_code,
                transient=resp.status_code >= 500 or resp.status_code == 429,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise TBankError(f'{method}_invalid_response', status_code=resp.status_code) from exc
        if not isinstance(data, dict):
            raise TBankError(f'{method}_invalid_response', status_code=resp.status_code)
        if data.get('Success') is False:
            message = data.get('Message') or data.get('Details') or 'rejected'
            raise TBankError(
                f'{method}_rejected:{message}',
                status_code=resp.status_code,
                error_code=str(data.get('ErrorCode') or '') or None,
            )
        return data

    async def init_payment(
        self,
        *,
        amount: Decimal,
        order_id: str,
        description: str,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            'Amount': to_kopecks(amount),
            'OrderId': order_id,
            'Description': description[:250],
        }
        if self.success_url:
            params['SuccessURL'] = self.success_url
        if self.failure_url:
            params['FailURL'] = self.failure_url

        data = await self._call('Init', params)
        if not data.get('PaymentURL') or not data.get('PaymentId'):
            raise TBankError(f'Init_invalid_response:{data}')
        return data

    async def get_state(self, gateway_payment_id: str) -> dict[str, Any]:
        data = await self._call('GetState', {'PaymentId': str(gateway_payment_id)})
        if not data.get('Status'):
            raise TBankError(f'GetState_invalid_response:{data}')
        return data
