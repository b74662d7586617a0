from __future__ import annotations

import hashlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from vissreader.services.image_client import ImageProvider
from vissreader.services.spend_gate import PaidResult
from vissreader.utils.logging import get_logger


logger = get_logger('illustrations')

MAX_CHUNK_WORDS = 500


class IllustrationRequest(BaseModel):
    device_id: str = Field(..., alias='deviceId', min_length=1, max_length=255)
    book_title: str = Field(..., alias='bookTitle', min_length=1, max_length=100)
    author: str = Field(..., min_length=1, max_length=50)
    text_chunk: str = Field(..., alias='textChunk', min_length=1)
    prev_scene_description: Optional[str] = Field(None, alias='prevSceneDescription', max_length=500)
    audience: Optional[str] = None
    style_key: Optional[str] = Field(None, alias='styleKey', max_length=50)

    @field_validator('text_chunk')
    @classmethod
    def _limit_words(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('textChunk cannot be empty')
        if len(value.split()) > MAX_CHUNK_WORDS:
            raise ValueError(f'textChunk must not exceed {MAX_CHUNK_WORDS} words')
        return value


@dataclass
class Illustration:
    image_url: str
    prompt_used: str
    cached: bool


def build_prompt(request: IllustrationRequest) -> str:
    parts = [
        f'Book illustration for "{request.book_title}" by {request.author}.',
        f'Scene: {request.text_chunk.strip()}',
    ]
    if request.prev_scene_description:
        parts.append(f'Previous scene, keep characters consistent: {request.prev_scene_description.strip()}')
    if request.audience:
        parts.append(f'Audience: {request.audience}.')
    parts.append(f'Style: {request.style_key or "standard"}. No text or captions in the image.')
    return '\n'.join(parts)


class IllustrationCache:
    def __init__(self, max_size: int = 500) -> None:
        self.max_size = max(1, max_size)
        self._items: OrderedDict[str, str] = OrderedDict()

    def get(self, key: str) -> Optional[str]:
        url = self._items.get(key)
        if url is not None:
            self._items.move_to_end(key)
        return url

    def put(self, key: str, url: str) -> None:
        self._items[key] = url
        self._items.move_to_end(key)
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)


class IllustrationService:
    def __init__(self, provider: ImageProvider, cache: IllustrationCache) -> None:
        self.provider = provider
        self.cache = cache

    @staticmethod
    def cache_key(prompt: str, model: str) -> str:
        return hashlib.sha256(f'{model}\n{prompt}'.encode('utf-8')).hexdigest()

    async def illustrate(self, request: IllustrationRequest, model: str) -> PaidResult[Illustration]:
        prompt = build_prompt(request)
        key = self.cache_key(prompt, model)
        cached_url = self.cache.get(key)
        if cached_url:
            logger.info('illustration_cache_hit', model=model)
            return PaidResult(Illustration(cached_url, prompt, cached=True), chargeable=False)

        url = await self.provider.generate(prompt, model)
        self.cache.put(key, url)
        logger.info('illustration_generated', model=model)
        return PaidResult(Illustration(url, prompt, cached=False))
