import pytest

from services.previews import PreviewRegistry


def test_create_get_release():
    registry = PreviewRegistry()
    handle = registry.create(b"abc", "image/jpeg")

    assert handle.url == f"/api/previews/{handle.id}"
    assert handle.size == 3
    assert registry.get(handle.id) == (b"abc", "image/jpeg")

    assert handle.release() is True
    assert handle.released
    assert handle.release() is False
    with pytest.raises(KeyError):
        registry.get(handle.id)


def test_context_manager_releases_on_exit():
    registry = PreviewRegistry()
    with registry.create(b"abc", "image/jpeg") as handle:
        assert not handle.released
    assert handle.released
    assert len(registry) == 0


def test_context_manager_releases_on_error():
    registry = PreviewRegistry()
    with pytest.raises(RuntimeError):
        with registry.create(b"abc", "image/jpeg"):
            raise RuntimeError("boom")
    assert len(registry) == 0


def test_handles_are_distinct():
    registry = PreviewRegistry()
    ids = {registry.create(b"x", "image/jpeg").id for _ in range(20)}
    assert len(ids) == 20
    assert len(registry) == 20
    registry.clear()
    assert len(registry) == 0
