from __future__ import annotations

from typing import Any, Dict, List, Protocol

import httpx

from vissreader.config import Settings, get_settings
from vissreader.utils.logging import get_logger


logger = get_logger('image_client')


class ImageError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ImageProvider(Protocol):
    async def generate(self, prompt: str, model: str) -> str:
        ...


class ImageClient:
    """OpenAI-compatible ``/images/generations`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url.rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'ImageClient':
        settings = settings or get_settings()
        return cls(
            api_key=settings.image_api_key,
            base_url=settings.image_api_url,
            timeout=settings.image_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    async def generate(self, prompt: str, model: str) -> str:
        if not self.api_key:
            raise ImageError('image_api_not_configured')
        body = {'model': model, 'prompt': prompt, 'n': 1, 'size': '1024x1024'}
        try:
            resp = await self._client.post(f'{self.base_url}/images/generations', headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise ImageError(f'image_transport_failed:{exc}') from exc
        if resp.status_code >= 400:
            logger.warning('image_request_failed', status_code=resp.status_code, model=model)
            raise ImageError(f'image_http_failed {resp.status_code}: {resp.text[:300]}', resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ImageError('image_invalid_response') from exc
        urls = self.parse_result_urls(data)
        if not urls:
            raise ImageError('image_empty_result')
        return urls[0]

    @staticmethod
    def parse_result_urls(record: Dict[str, Any]) -> List[str]:
        urls: List[str] = []
        items = record.get('data') if isinstance(record, dict) else None
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict):
                    url = str(item.get('url') or '').strip()
                    if url:
                        urls.append(url)
                    elif item.get('b64_json'):
                        urls.append(f"data:image/png;base64,{item['b64_json']}")
        return list(dict.fromkeys(urls))
