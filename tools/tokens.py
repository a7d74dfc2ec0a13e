import asyncio
import json
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

import redis.asyncio as redis
from redis.exceptions import RedisError
from loguru import logger

from graph.errors import (
    InvalidPhoneNumber,
    StoreUnavailable,
    TokenAlreadyConsumed,
    TokenError,
    TokenExpired,
    TokenNotFound,
)
from graph.models import FormToken, TokenValidation
from tools.phone import is_valid_phone_number, mask_phone_number, normalize_phone_number

TOKEN_BYTES = 32

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class TokenStore(ABC):
    """Persistence for form tokens. `mark_consumed` must be an atomic compare-and-set."""

    @abstractmethod
    async def save(self, form_token: FormToken) -> None: ...

    @abstractmethod
    async def get(self, token: str) -> Optional[FormToken]: ...

    @abstractmethod
    async def mark_consumed(self, token: str, consumed_at: datetime) -> bool:
        """Flip consumed false -> true. Returns False if it was already consumed."""

    @abstractmethod
    async def ping(self) -> bool: ...

    async def aclose(self) -> None:
        pass

class InMemoryTokenStore(TokenStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._tokens: Dict[str, FormToken] = {}
        self._lock = asyncio.Lock()

    async def save(self, form_token: FormToken) -> None:
        async with self._lock:
            self._tokens[form_token.token] = form_token.model_copy()

    async def get(self, token: str) -> Optional[FormToken]:
        form_token = self._tokens.get(token)
        return form_token.model_copy() if form_token else None

    async def mark_consumed(self, token: str, consumed_at: datetime) -> bool:
        async with self._lock:
            form_token = self._tokens.get(token)
            if form_token is None or form_token.consumed:
                return False
            self._tokens[token] = form_token.model_copy(update={"consumed": True, "consumed_at": consumed_at})
            return True

    async def ping(self) -> bool:
        return True

class RedisTokenStore(TokenStore):
    """
    Redis-backed token store.

    The token record lives at ``form_token:{token}`` as JSON and is written once. Consumption
    is a separate ``form_token:{token}:consumed`` key set with NX, so exactly one caller wins.
    Records are kept without expiry for audit and replay rejection.
    """

    def __init__(self, client: redis.Redis, prefix: str = "form_token"):
        self.r = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisTokenStore":
        return cls(redis.from_url(redis_url, decode_responses=True))

    def _key(self, token: str) -> str:
        return f"{self.prefix}:{token}"

    async def save(self, form_token: FormToken) -> None:
        try:
            await self.r.set(self._key(form_token.token), form_token.model_dump_json(by_alias=True))
        except RedisError as e:
            logger.error(f"Failed to persist form token: {e}")
            raise StoreUnavailable(f"Token store unavailable: {e}", store="token")

    async def get(self, token: str) -> Optional[FormToken]:
        try:
            record, consumed_at = await self.r.mget(self._key(token), f"{self._key(token)}:consumed")
        except RedisError as e:
            logger.error(f"Failed to read form token: {e}")
            raise StoreUnavailable(f"Token store unavailable: {e}", store="token")
        if record is None:
            return None
        form_token = FormToken.model_validate(json.loads(record))
        if consumed_at is not None:
            form_token.consumed = True
            form_token.consumed_at = datetime.fromisoformat(consumed_at)
        return form_token

    async def mark_consumed(self, token: str, consumed_at: datetime) -> bool:
        try:
            result = await self.r.set(
                name=f"{self._key(token)}:consumed",
                value=consumed_at.isoformat(),
                nx=True,
            )
        except RedisError as e:
            # Fail closed: an unknown outcome never lets a submission through
            logger.error(f"Token consume failed: {e}")
            raise StoreUnavailable(f"Token store unavailable: {e}", store="token")
        return result is True

    async def ping(self) -> bool:
        try:
            return bool(await self.r.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def aclose(self) -> None:
        await self.r.aclose()

class TokenAuthority:
    """Issues, validates and consumes single-use, phone-bound form tokens."""

    def __init__(
        self,
        store: TokenStore,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ttl = ttl
        self.clock = clock

    async def issue(self, phone_number: str) -> FormToken:
        phone = normalize_phone_number(phone_number)
        if not is_valid_phone_number(phone):
            raise InvalidPhoneNumber(f"Phone number must be in E.164 format, got {phone_number!r}")

        issued_at = self.clock()
        form_token = FormToken(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            phone_number=phone,
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
        )
        await self.store.save(form_token)
        logger.info(f"Issued form token for {mask_phone_number(phone)}, expires {form_token.expires_at.isoformat()}")
        return form_token

    async def check(self, token: str) -> FormToken:
        """Return the token if it can authorize a submission, else raise the specific TokenError."""
        form_token = await self.store.get(token) if token else None
        if form_token is None:
            raise TokenNotFound("Form token not found")
        if form_token.consumed:
            raise TokenAlreadyConsumed("Form token has already been used")
        if form_token.is_expired(self.clock()):
            raise TokenExpired("Form token has expired")
        return form_token

    async def validate(self, token: str) -> TokenValidation:
        """Side-effect free check; never marks the token consumed."""
        try:
            form_token = await self.check(token)
        except TokenError as e:
            logger.info(f"Token validation failed: {e.code}")
            return TokenValidation(valid=False, reason=e.code)
        return TokenValidation(valid=True, phone_number=form_token.phone_number)

    async def consume(self, token: str) -> FormToken:
        form_token = await self.check(token)
        consumed_at = self.clock()
        if not await self.store.mark_consumed(token, consumed_at):
            logger.warning(f"Lost consume race for token bound to {mask_phone_number(form_token.phone_number)}")
            raise TokenAlreadyConsumed("Form token has already been used")
        logger.info(f"Consumed form token for {mask_phone_number(form_token.phone_number)}")
        return form_token.model_copy(update={"consumed": True, "consumed_at": consumed_at})

def build_form_url(base_url: str, token: str, phone_number: str) -> str:
    """Link sent to the user by the messaging service."""
    query = urlencode({"token": token, "phone": phone_number})
    return f"{base_url.rstrip('/')}/form.html?{query}"
