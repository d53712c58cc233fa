from __future__ import annotations

from pathlib import Path

from app.crawler.content_cache import ContentCache


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _cache(clock: FakeClock, **kwargs) -> ContentCache:
    kwargs.setdefault("max_entries", 5)
    kwargs.setdefault("max_size_bytes", 10_000)
    kwargs.setdefault("ttl_seconds", 60)
    return ContentCache(clock=clock, log=lambda msg: None, **kwargs)


def test_frequently_read_entries_survive_eviction() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    for key in "abcde":
        cache.set(key, f"value-{key}")
        clock.advance(1)
    for _ in range(3):
        assert cache.get("a") == "value-a"

    cache.set("f", "value-f")

    assert len(cache) == 4
    assert "a" in cache
    assert "f" in cache
    assert "b" not in cache
    assert "c" not in cache


def test_size_bound_is_enforced_and_oversized_values_rejected() -> None:
    clock = FakeClock()
    cache = _cache(clock, max_entries=100, max_size_bytes=100)

    assert cache.set("huge", "x" * 101) is False
    for index in range(10):
        cache.set(f"k{index}", "y" * 20)
        clock.advance(1)

    stats = cache.get_stats()
    assert stats.size_bytes <= 100
    assert "k9" in cache


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = _cache(clock, ttl_seconds=10)
    cache.set("page", b"<html></html>")

    clock.advance(5)
    assert cache.get("page") == b"<html></html>"
    clock.advance(6)
    assert cache.get("page") is None

    stats = cache.get_stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.hit_rate == 0.5


def test_persisted_entries_reload(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = _cache(clock, persist_dir=tmp_path)
    cache.set("text", "hello")
    cache.set("blob", b"\x00\x01")
    (tmp_path / "corrupt.json").write_text("{oops", encoding="utf-8")

    reloaded = _cache(clock, persist_dir=tmp_path)

    assert reloaded.persistent is True
    assert reloaded.get("text") == "hello"
    assert reloaded.get("blob") == b"\x00\x01"


def test_unwritable_persist_dir_falls_back_to_memory(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")

    cache = _cache(FakeClock(), persist_dir=blocker)

    assert cache.persistent is False
    assert cache.set("k", "v") is True
    assert cache.get("k") == "v"


def test_delete_and_clear() -> None:
    cache = _cache(FakeClock())
    cache.set("a", "1")
    cache.set("b", "2")

    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.clear()
    assert len(cache) == 0
    assert cache.get_stats().size_bytes == 0
