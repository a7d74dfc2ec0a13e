import json
import pytest
import os
import sys
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

from redis.exceptions import ConnectionError as RedisConnectionError

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.errors import InvalidPhoneNumber, StoreUnavailable, TokenAlreadyConsumed, TokenExpired
from graph.models import FormToken
from tools.phone import is_valid_phone_number, mask_phone_number, normalize_phone_number
from tools.tokens import InMemoryTokenStore, RedisTokenStore, TokenAuthority, build_form_url
from helpers import PHONE, FakeClock

class TestTokenAuthority:
    """Test issuing, validating and consuming form tokens."""

    def setup_method(self):
        self.clock = FakeClock()
        self.authority = TokenAuthority(InMemoryTokenStore(), ttl=timedelta(minutes=30), clock=self.clock)

    @pytest.mark.asyncio
    async def test_issue(self):
        form_token = await self.authority.issue(PHONE)

        assert form_token.phone_number == PHONE
        assert form_token.consumed is False
        assert form_token.expires_at - form_token.issued_at == timedelta(minutes=30)
        assert len(form_token.token) >= 32

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self):
        tokens = {(await self.authority.issue(PHONE)).token for _ in range(20)}
        assert len(tokens) == 20

    @pytest.mark.asyncio
    async def test_issue_rejects_bad_phone(self):
        with pytest.raises(InvalidPhoneNumber):
            await self.authority.issue("555-12")

    @pytest.mark.asyncio
    async def test_validate_is_repeatable_consume_is_not(self):
        form_token = await self.authority.issue(PHONE)

        for _ in range(3):
            validation = await self.authority.validate(form_token.token)
            assert validation.valid is True
            assert validation.phone_number == PHONE

        consumed = await self.authority.consume(form_token.token)
        assert consumed.consumed is True
        assert consumed.consumed_at == self.clock()

        with pytest.raises(TokenAlreadyConsumed):
            await self.authority.consume(form_token.token)

        validation = await self.authority.validate(form_token.token)
        assert validation.valid is False
        assert validation.reason == "TOKEN_ALREADY_CONSUMED"

    @pytest.mark.asyncio
    async def test_validate_unknown_token(self):
        validation = await self.authority.validate("missing")
        assert validation.valid is False
        assert validation.phone_number is None
        assert validation.reason == "TOKEN_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_expiry_boundary(self):
        form_token = await self.authority.issue(PHONE)

        self.clock.advance(minutes=30)
        assert (await self.authority.validate(form_token.token)).valid is True

        self.clock.advance(seconds=1)
        assert (await self.authority.validate(form_token.token)).reason == "TOKEN_EXPIRED"
        with pytest.raises(TokenExpired):
            await self.authority.consume(form_token.token)

    def test_build_form_url(self):
        url = build_form_url("https://forms.example.com/", "abc123", PHONE)
        parsed = urlparse(url)

        assert parsed.path == "/form.html"
        assert parse_qs(parsed.query) == {"token": ["abc123"], "phone": [PHONE]}

class TestRedisTokenStore:
    """Test the Redis-backed store against a mocked redis.asyncio client."""

    def setup_method(self):
        self.client = MagicMock()
        self.store = RedisTokenStore(self.client)
        self.clock = FakeClock()
        self.form_token = FormToken(
            token="abc",
            phone_number=PHONE,
            issued_at=self.clock(),
            expires_at=self.clock() + timedelta(minutes=30),
        )

    @pytest.mark.asyncio
    async def test_save_writes_json_record(self):
        self.client.set = AsyncMock(return_value=True)

        await self.store.save(self.form_token)

        key, value = self.client.set.call_args.args
        assert key == "form_token:abc"
        assert json.loads(value)["phoneNumber"] == PHONE

    @pytest.mark.asyncio
    async def test_mark_consumed_uses_set_nx(self):
        self.client.set = AsyncMock(side_effect=[True, None])

        assert await self.store.mark_consumed("abc", self.clock()) is True
        assert await self.store.mark_consumed("abc", self.clock()) is False

        kwargs = self.client.set.call_args.kwargs
        assert kwargs["name"] == "form_token:abc:consumed"
        assert kwargs["nx"] is True

    @pytest.mark.asyncio
    async def test_get_merges_consumed_marker(self):
        record = self.form_token.model_dump_json(by_alias=True)
        self.client.mget = AsyncMock(return_value=[record, self.clock().isoformat()])

        form_token = await self.store.get("abc")

        assert form_token.consumed is True
        assert form_token.consumed_at == self.clock()
        self.client.mget.assert_awaited_once_with("form_token:abc", "form_token:abc:consumed")

    @pytest.mark.asyncio
    async def test_get_missing(self):
        self.client.mget = AsyncMock(return_value=[None, None])
        assert await self.store.get("abc") is None

    @pytest.mark.asyncio
    async def test_consume_fails_closed(self):
        self.client.set = AsyncMock(side_effect=RedisConnectionError("connection refused"))

        with pytest.raises(StoreUnavailable) as exc_info:
            await self.store.mark_consumed("abc", self.clock())
        assert exc_info.value.store == "token"

    @pytest.mark.asyncio
    async def test_ping(self):
        self.client.ping = AsyncMock(return_value=True)
        assert await self.store.ping() is True

        self.client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await self.store.ping() is False

class TestPhoneNumbers:

    def test_normalize(self):
        assert normalize_phone_number(" +1 (555) 123-4999 ") == PHONE
        assert normalize_phone_number("972501234001") == "+972501234001"
        assert normalize_phone_number(None) == ""

    def test_validate(self):
        assert is_valid_phone_number(PHONE)
        assert not is_valid_phone_number("+1555")
        assert not is_valid_phone_number("15551234999")
        assert not is_valid_phone_number("")

    def test_mask(self):
        assert mask_phone_number(PHONE) == "+1555123****"
        assert mask_phone_number(None) == "unknown"
