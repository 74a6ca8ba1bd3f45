"""LinkStore tests against a real SQLite datastore."""

import asyncio
import datetime
import json
from unittest.mock import AsyncMock

import pytest
from conftest import FREE_USER, PRO_USER
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import CodeAlreadyExists, GenerationExhausted, LinkNotFound, ValidationError
from app.link_store import LinkDraft, LinkStore
from app.models import Link, ShortCodeRegistration, utc_now
from app.shortcode import ShortCodeGenerator


class FixedDraws(ShortCodeGenerator):
    """Generator that replays a fixed sequence of random draws."""

    def __init__(self, *codes: str) -> None:
        super().__init__()
        self._codes = iter(codes)

    def generate(self, custom_code: str | None = None) -> str:
        if custom_code is not None:
            return super().generate(custom_code)
        return next(self._codes)


def draft(url: str = "https://example.com/a/b", **kwargs) -> LinkDraft:
    return LinkDraft(owner_id=kwargs.pop("owner_id", FREE_USER), original_url=url, **kwargs)


@pytest.mark.asyncio
async def test_create_and_lookup(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)
    link = await store.create(draft())

    assert len(link.short_code) == 6
    assert link.click_count == 0
    assert link.is_active is True

    found = await store.get_by_short_code(link.short_code)
    assert found is not None
    assert found.original_url == "https://example.com/a/b"


@pytest.mark.asyncio
async def test_lookup_is_case_sensitive(db_session: AsyncSession) -> None:
    store = LinkStore(db_session, FixedDraws("AbCdEf"))
    await store.create(draft())

    assert await store.get_by_short_code("AbCdEf") is not None
    assert await store.get_by_short_code("abcdef") is None
    assert await store.get_by_short_code("ABCDEF") is None


@pytest.mark.asyncio
async def test_random_collision_is_redrawn(db_session: AsyncSession) -> None:
    store = LinkStore(db_session, FixedDraws("aaaaaa", "aaaaaa", "bbbbbb"))
    first = await store.create(draft("https://example.com/1"))
    assert first.short_code == "aaaaaa"

    second = await store.create(draft("https://example.com/2"))
    assert second.short_code == "bbbbbb"
    assert (await store.get_by_short_code("aaaaaa")).original_url == "https://example.com/1"


@pytest.mark.asyncio
async def test_generation_exhausted_after_five_collisions(db_session: AsyncSession) -> None:
    store = LinkStore(db_session, FixedDraws(*["dupdup"] * 6))
    await store.create(draft())

    with pytest.raises(GenerationExhausted) as exc_info:
        await store.create(draft("https://example.com/other"))
    assert exc_info.value.attempts == 5

    count = await db_session.scalar(select(func.count()).select_from(Link))
    assert count == 1


@pytest.mark.asyncio
async def test_custom_code_conflict_is_not_retried(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)
    await store.create(draft("https://example.com/first", owner_id=PRO_USER, custom_code="promo2024"))

    with pytest.raises(CodeAlreadyExists):
        await store.create(draft("https://example.com/second", owner_id=PRO_USER, custom_code="promo2024"))

    link = await store.get_by_short_code("promo2024")
    assert link.original_url == "https://example.com/first"


@pytest.mark.asyncio
async def test_deleted_code_is_never_reissued(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)
    link = await store.create(draft(owner_id=PRO_USER, custom_code="gone123"))
    await store.delete(link.id, PRO_USER)

    assert await store.get_by_short_code("gone123") is None
    assert await db_session.get(ShortCodeRegistration, "gone123") is not None
    with pytest.raises(CodeAlreadyExists):
        await store.create(draft(owner_id=PRO_USER, custom_code="gone123"))


@pytest.mark.asyncio
async def test_before_insert_failure_rolls_back(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)

    async def deny() -> None:
        raise RuntimeError("denied")

    with pytest.raises(RuntimeError):
        await store.create(draft(), before_insert=deny)

    assert await db_session.scalar(select(func.count()).select_from(Link)) == 0
    assert await db_session.scalar(select(func.count()).select_from(ShortCodeRegistration)) == 0


@pytest.mark.asyncio
async def test_concurrent_increments_lose_nothing(session_factory: async_sessionmaker, generator: ShortCodeGenerator) -> None:
    async with session_factory() as session:
        link = await LinkStore(session, generator).create(draft())

    async def click() -> None:
        async with session_factory() as session:
            await LinkStore(session, generator).increment_clicks(link.id)

    await asyncio.gather(*(click() for _ in range(20)))

    async with session_factory() as session:
        refreshed = await LinkStore(session, generator).get_by_id(link.id)
    assert refreshed.click_count == 20


@pytest.mark.asyncio
async def test_increment_missing_link_reports_false(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    assert await LinkStore(db_session, generator).increment_clicks("no-such-link") is False


@pytest.mark.asyncio
async def test_list_by_owner_newest_first(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)
    created = []
    for n in range(3):
        link = await store.create(draft(f"https://example.com/{n}"))
        link.created_at = utc_now() + datetime.timedelta(seconds=n)
        await db_session.commit()
        created.append(link.id)
    await store.create(draft(owner_id=PRO_USER))

    links = await store.list_by_owner(FREE_USER, limit=10, offset=0)
    assert [link.id for link in links] == list(reversed(created))

    page = await store.list_by_owner(FREE_USER, limit=1, offset=1)
    assert [link.id for link in page] == [created[1]]


@pytest.mark.asyncio
async def test_update_scoped_to_owner(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)
    link = await store.create(draft())

    with pytest.raises(LinkNotFound):
        await store.update(link.id, PRO_USER, {"title": "stolen"})

    updated = await store.update(link.id, FREE_USER, {"title": "Mine", "is_active": False})
    assert updated.title == "Mine"
    assert updated.is_active is False


@pytest.mark.asyncio
async def test_update_rejects_immutable_fields(db_session: AsyncSession, generator: ShortCodeGenerator) -> None:
    store = LinkStore(db_session, generator)
    link = await store.create(draft())

    with pytest.raises(ValidationError):
        await store.update(link.id, FREE_USER, {"short_code": "hijack"})


@pytest.mark.asyncio
async def test_cache_read_through_and_invalidation(db_session: AsyncSession, generator: ShortCodeGenerator, cache: AsyncMock) -> None:
    store = LinkStore(db_session, generator, cache)
    link = await store.create(draft())

    key, ttl, payload = cache.setex.await_args.args
    assert key == f"link:{link.short_code}"
    assert ttl == 3600
    assert json.loads(payload)["original_url"] == "https://example.com/a/b"

    cache.get.return_value = payload
    cached = await store.get_by_short_code(link.short_code)
    assert cached.id == link.id

    await store.update(link.id, FREE_USER, {"is_active": False})
    cache.delete.assert_awaited_with(f"link:{link.short_code}")


@pytest.mark.asyncio
async def test_cache_failure_falls_back_to_datastore(db_session: AsyncSession, generator: ShortCodeGenerator, cache: AsyncMock) -> None:
    cache.get.side_effect = RedisConnectionError("down")
    cache.setex.side_effect = RedisConnectionError("down")
    store = LinkStore(db_session, generator, cache)

    link = await store.create(draft())
    found = await store.get_by_short_code(link.short_code)
    assert found.id == link.id
