import attrs
import numpy as np
import pytest

from cuensemble.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)


@attrs.define
class _Settings(CUDAFactoryConfig):
    n: int = attrs.field(default=1)
    label: str = attrs.field(default="a")
    func: object = attrs.field(default=None, eq=False)


@attrs.define
class _Cache(CUDADispatcherCache):
    value: object = attrs.field()
    missing: object = attrs.field(default=-1)


class _CountingFactory(CUDAFactory):
    def __init__(self, **kwargs):
        super().__init__()
        self.builds = 0
        self.setup_compile_settings(_Settings(precision=np.float64, **kwargs))

    def build(self):
        self.builds += 1
        return _Cache(value=self.compile_settings.n)


class _BadFactory(CUDAFactory):
    def build(self):
        return {"value": None}


class _Parent(_CountingFactory):
    def __init__(self, child_n=3):
        super().__init__()
        self.child = _CountingFactory(n=child_n)


@pytest.fixture(scope="function")
def factory():
    return _CountingFactory()


def test_setup_requires_attrs_settings(factory):
    with pytest.raises(TypeError):
        factory.setup_compile_settings({"n": 1})


def test_outputs_built_lazily_and_cached(factory):
    assert not factory.cache_valid
    assert factory.get_cached_output("value") == 1
    assert factory.get_cached_output("value") == 1
    assert factory.builds == 1
    assert factory.cache_valid


def test_new_settings_invalidate_and_rebuild(factory):
    factory.get_cached_output("value")
    factory.setup_compile_settings(_Settings(precision=np.float32, n=5))
    assert not factory.cache_valid
    assert factory.get_cached_output("value") == 5
    assert factory.precision is np.float32
    assert factory.builds == 2


def test_missing_output_raises(factory):
    with pytest.raises(KeyError):
        factory.get_cached_output("nonexistent")
    with pytest.raises(NotImplementedError):
        factory.get_cached_output("missing")


def test_build_must_return_cache():
    bad = _BadFactory()
    bad.setup_compile_settings(_Settings(precision=np.float64))
    with pytest.raises(TypeError, match="CUDADispatcherCache"):
        bad.get_cached_output("value")


def test_values_hash_tracks_hashable_fields():
    first = _Settings(precision=np.float64).values_hash
    assert _Settings(precision=np.float64).values_hash == first
    assert _Settings(precision=np.float64, label="b").values_hash != first
    assert _Settings(precision=np.float32).values_hash != first


def test_unhashed_fields_ignored():
    with_len = _Settings(precision=np.float64, func=len)
    with_print = _Settings(precision=np.float64, func=print)
    assert with_len.values_hash == with_print.values_hash


def test_config_hash_includes_children():
    assert _Parent().config_hash == _Parent().config_hash
    assert _Parent(child_n=4).config_hash != _Parent().config_hash
    assert _Parent().config_hash != _CountingFactory().config_hash
