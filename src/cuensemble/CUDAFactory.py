"""Base classes for constructing cached lane functions with Numba."""

from hashlib import sha256
from abc import ABC, abstractmethod
from typing import Any, Tuple

from attrs import define, field, has, Attribute, astuple
from numpy import ndarray

from cuensemble._utils import (
    in_attr,
    PrecisionDType,
    precision_validator,
    precision_converter,
)


def _hash_tuple(input: Tuple) -> str:
    """Serialize a tuple of settings to a SHA256 hexdigest."""
    parts = []
    for value in input:
        if value is None:
            parts.append("None")
        elif isinstance(value, ndarray):
            array_hash = sha256(value.tobytes()).hexdigest()
            parts.append(f"ndarray:{value.shape}:{array_hash}")
        else:
            parts.append(str(value))
    combined = "|".join(parts)
    return sha256(combined.encode("utf-8")).hexdigest()


def attribute_is_hashable(attribute: Attribute, value: Any) -> bool:
    """Return False for fields declared with ``eq=False``.

    Callables such as user right-hand sides are marked ``eq=False`` and so
    take no part in value hashing.
    """
    return attribute.eq is not False



@define
class _ConfigBase:
    """Settings container with value hashing."""

    @property
    def values_tuple(self) -> Tuple:
        """Tuple of all attrs field values without eq=False."""
        return astuple(self, recurse=True, filter=attribute_is_hashable)

    @property
    def values_hash(self) -> str:
        """SHA256 hexdigest of :attr:`values_tuple`."""
        return _hash_tuple(self.values_tuple)


@define
class CUDAFactoryConfig(_ConfigBase):
    """Base class for compile settings of lane-function factories.

    Settings are fixed once a factory is built around them; a different
    configuration means a new factory, and the dispatcher looks kernels up
    by :attr:`CUDAFactory.config_hash`.
    """

    precision: PrecisionDType = field(
        validator=precision_validator, converter=precision_converter
    )


@define
class CUDADispatcherCache:
    """Base class for containers of compiled factory outputs."""

    pass


class CUDAFactory(ABC):
    """Factory for creating and caching compiled lane functions.

    Subclasses implement :meth:`build` to construct Numba device functions
    or kernels and return them in a :class:`CUDADispatcherCache` subclass.
    Nothing is compiled until the first output is requested.

    Notes
    -----
    Always fetch compiled functions through :meth:`get_cached_output` (or a
    property wrapping it) at the point of use.
    """

    def __init__(self):
        self._compile_settings = None
        self._cache_valid = True
        self._cache = None

    @abstractmethod
    def build(self):
        """Build and return a :class:`CUDADispatcherCache` of outputs."""
        return None

    def setup_compile_settings(self, compile_settings):
        """Attach a container of compile-critical settings to the object.

        Any existing settings are replaced and the cache is invalidated.
        """
        if not has(type(compile_settings)):
            raise TypeError(
                "Compile settings must be an attrs class instance."
            )
        self._compile_settings = compile_settings
        self._invalidate_cache()

    @property
    def cache_valid(self):
        """bool: ``True`` if cached outputs are up to date."""

        return self._cache_valid

    @property
    def compile_settings(self):
        """Return the current compile settings object."""
        return self._compile_settings

    def _invalidate_cache(self):
        self._cache_valid = False

    def _build(self):
        build_result = self.build()

        if not isinstance(build_result, CUDADispatcherCache):
            raise TypeError(
                "build() must return an attrs class (CUDADispatcherCache "
                "subclass)"
            )

        self._cache = build_result
        self._cache_valid = True

    def get_cached_output(self, output_name):
        """Return a named cached output, rebuilding first if stale.

        Raises
        ------
        KeyError
            If ``output_name`` is not present in the cache.
        NotImplementedError
            If the cache holds ``-1`` for the name, marking an output the
            subclass does not provide.
        """
        if not self.cache_valid:
            self._build()
        if self._cache is None:
            raise RuntimeError("Cache has not been initialized by build().")
        if not in_attr(output_name, self._cache):
            raise KeyError(
                f"Output '{output_name}' not found in cached outputs."
            )
        cache_contents = getattr(self._cache, output_name)
        if type(cache_contents) is int and cache_contents == -1:
            raise NotImplementedError(
                f"Output '{output_name}' is not implemented in this class."
            )
        return cache_contents

    @property
    def config_hash(self):
        """Hash of this factory's settings combined with its children's."""
        own_hash = self.compile_settings.values_hash
        child_hashes = tuple(
            child.config_hash for child in self._iter_child_factories()
        )
        if child_hashes:
            hash_str = own_hash + "".join(child_hashes)
            return sha256(hash_str.encode("utf-8")).hexdigest()
        return own_hash

    def _iter_child_factories(self):
        """Yield attribute values that are CUDAFactory instances, once each.

        Attributes are visited in name order for deterministic hashing.
        """
        seen = set()
        attributes = vars(self)
        for name in sorted(attributes.keys()):
            val = attributes[name]
            if isinstance(val, CUDAFactory) and id(val) not in seen:
                seen.add(id(val))
                yield val

    @property
    def precision(self) -> type:
        """Return the precision dtype used by compiled functions."""
        return self.compile_settings.precision
