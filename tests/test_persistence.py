"""
Tests for the surface codec, storage backends and the surface cache.
"""

import asyncio
import json

import pytest

from volsurf import config
from volsurf.exceptions import PersistenceDecodeError
from volsurf.persistence import (
    FileSystemBackend,
    InMemoryBackend,
    SurfaceCache,
    SurfaceHandle,
    decode_surface,
    encode_surface,
)
from volsurf.surface_builder import build_surface

from conftest import AS_OF, RATE, SPOT


class TestCodec:

    def test_round_trip(self, surface):
        payload, digest = encode_surface(surface)
        restored = decode_surface(payload, digest)
        assert restored == surface
        assert restored.built_at == surface.built_at
        assert restored.implied_vol(97.5, restored.expirations[1]) == \
            surface.implied_vol(97.5, surface.expirations[1])

    def test_round_trip_keeps_dividend_yield(self, chain):
        surface = build_surface("SPY", chain, SPOT, RATE, AS_OF, dividend_yield=0.015)
        payload, digest = encode_surface(surface)
        restored = decode_surface(payload, digest)
        assert restored.dividend_yield == 0.015
        density = restored.risk_neutral_density(restored.expirations[0])
        assert density.equals(surface.risk_neutral_density(surface.expirations[0]))

    def test_not_json(self):
        with pytest.raises(PersistenceDecodeError):
            decode_surface(b"\x00\xffnot json")

    def test_truncated(self, surface):
        payload, _ = encode_surface(surface)
        with pytest.raises(PersistenceDecodeError):
            decode_surface(payload[: len(payload) // 2])

    def test_tampered_body(self, surface):
        payload, _ = encode_surface(surface)
        envelope = json.loads(payload)
        envelope["body"]["entries"][0]["volatility"] = 9.99
        with pytest.raises(PersistenceDecodeError, match="digest"):
            decode_surface(json.dumps(envelope).encode())

    @pytest.mark.parametrize("field, value", [
        ("schema", "someone.else"),
        ("version", config.SURFACE_SCHEMA_VERSION + 1),
    ])
    def test_schema_mismatch(self, surface, field, value):
        payload, _ = encode_surface(surface)
        envelope = json.loads(payload)
        envelope[field] = value
        with pytest.raises(PersistenceDecodeError, match="schema"):
            decode_surface(json.dumps(envelope).encode())

    def test_invalid_body_with_valid_digest(self, surface):
        """A well-formed envelope whose entries do not form a surface is still rejected."""
        payload, _ = encode_surface(surface)
        envelope = json.loads(payload)
        del envelope["body"]["entries"][0]["strike"]
        from volsurf.persistence import _digest
        envelope["digest"] = _digest(envelope["body"])
        with pytest.raises(PersistenceDecodeError):
            decode_surface(json.dumps(envelope).encode())

    def test_handle_digest_mismatch(self, surface):
        payload, _ = encode_surface(surface)
        with pytest.raises(PersistenceDecodeError):
            decode_surface(payload, expected_digest="0" * 64)


class TestBackends:

    def test_in_memory(self):
        backend = InMemoryBackend()
        backend.put("SPY/20240102T150000Z", b"abc")
        assert backend.exists("SPY/20240102T150000Z")
        assert backend.get("SPY/20240102T150000Z") == b"abc"
        with pytest.raises(KeyError):
            backend.get("QQQ/20240102T150000Z")

    def test_filesystem_atomic_write(self, tmp_path):
        backend = FileSystemBackend(tmp_path)
        backend.put("SPY/20240102T150000Z", b"first")
        backend.put("SPY/20240102T150000Z", b"second")
        assert backend.get("SPY/20240102T150000Z") == b"second"
        files = [p.name for p in (tmp_path / "SPY").iterdir()]
        assert files == ["20240102T150000Z.json"]

    def test_filesystem_missing_key(self, tmp_path):
        backend = FileSystemBackend(tmp_path)
        assert not backend.exists("SPY/x")
        with pytest.raises(KeyError):
            backend.get("SPY/x")

    @pytest.mark.parametrize("key", ["../escape", "a//b", "", "/abs"])
    def test_rejects_bad_keys(self, tmp_path, key):
        with pytest.raises(ValueError):
            FileSystemBackend(tmp_path).put(key, b"x")


class TestSurfaceCache:

    def test_persist_and_load(self, surface, tmp_path):
        cache = SurfaceCache(backend=FileSystemBackend(tmp_path))
        handle = cache.persist(surface)
        assert handle.key == "SPY/20240102T150000Z"
        assert cache.load(handle) == surface

    def test_corrupt_load_leaves_cache_untouched(self, surface):
        backend = InMemoryBackend()
        cache = SurfaceCache(backend=backend)
        cache.put(cache.key_for("SPY", AS_OF), surface)
        handle = cache.persist(surface)
        backend.put(handle.key, b'{"schema": "volsurf.surface"')

        with pytest.raises(PersistenceDecodeError):
            cache.load(handle)
        assert len(cache) == 1
        assert cache.get(cache.key_for("SPY", AS_OF)) is surface

    def test_load_missing(self):
        cache = SurfaceCache(backend=InMemoryBackend())
        with pytest.raises(KeyError):
            cache.load(SurfaceHandle("SPY/20240102T150000Z"))

    def test_flags_need_backend(self):
        with pytest.raises(ValueError):
            SurfaceCache(persist_on_build=True)

    @pytest.mark.asyncio
    async def test_get_or_build_single_flight(self, surface):
        cache = SurfaceCache()
        calls = 0

        async def builder():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return surface

        results = await asyncio.gather(*(cache.get_or_build("spy", AS_OF, builder) for _ in range(5)))
        assert calls == 1
        assert all(r is surface for r in results)

    @pytest.mark.asyncio
    async def test_failed_build_not_cached(self, surface):
        cache = SurfaceCache()

        async def broken():
            raise RuntimeError("solver blew up")

        async def working():
            return surface

        with pytest.raises(RuntimeError):
            await cache.get_or_build("SPY", AS_OF, broken)
        assert len(cache) == 0
        assert await cache.get_or_build("SPY", AS_OF, working) is surface

    @pytest.mark.asyncio
    async def test_persist_on_build_and_read_through(self, surface):
        backend = InMemoryBackend()
        writer = SurfaceCache(backend=backend, persist_on_build=True)

        async def builder():
            return surface

        await writer.get_or_build("SPY", AS_OF, builder)
        assert backend.exists("SPY/20240102T150000Z")

        reader = SurfaceCache(backend=backend, read_through=True)

        async def must_not_build():
            raise AssertionError("read-through should have served the surface")

        loaded = await reader.get_or_build("SPY", AS_OF, must_not_build)
        assert loaded == surface

    @pytest.mark.asyncio
    async def test_read_through_falls_back_to_build_on_corruption(self, surface):
        backend = InMemoryBackend()
        backend.put("SPY/20240102T150000Z", b"garbage")
        cache = SurfaceCache(backend=backend, read_through=True)

        async def builder():
            return surface

        assert await cache.get_or_build("SPY", AS_OF, builder) is surface
