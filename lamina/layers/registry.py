"""Registry of all layers that can be constructed by name.

Every layer is registered together with the metadata that is needed to
build and gradient-check it in isolation, so adding a new layer requires
providing that metadata at registration time.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from .base import Layer

L = TypeVar("L", bound="type[Layer]")


@dataclass(frozen=True)
class LayerSpec:
    """Specification for a registered layer.

    Attributes:
        layer_cls (type[Layer]): The layer class.
        names (tuple[str, ...]): Names the layer is registered under.
            First name is canonical, others are aliases.
        test_input_dimensions (tuple[int, ...]): Per-point input shape used
            when checking the layer in isolation.
        test_kwargs (dict[str, Any]): Constructor arguments used when
            checking the layer in isolation.
        recurrent (bool): Whether the layer keeps memory across time steps.
        skip_test (bool): Whether to skip automated finite difference testing.
        skip_reason (str | None): Reason for skipping. Required if skip_test=True.
    """

    layer_cls: type[Layer]
    names: tuple[str, ...]
    test_input_dimensions: tuple[int, ...] = (4,)
    test_kwargs: dict[str, Any] = field(default_factory=dict)
    recurrent: bool = False
    skip_test: bool = False
    skip_reason: str | None = None

    def __post_init__(self) -> None:
        """Validate that skip_reason is provided when skip_test is True.

        Raises:
            ValueError: If skip_test is True but skip_reason is None or empty.
        """
        if self.skip_test and not self.skip_reason:
            raise ValueError("skip_reason is required when skip_test=True")


# The registry maps normalized layer names to their specifications
_LAYER_REGISTRY: dict[str, LayerSpec] = {}


def normalize_layer_name(name: str) -> str:
    """Normalizes a layer name for registry lookups.

    Lookups are case-insensitive and ignore underscores, so "MaxPooling",
    "max_pooling" and "maxpooling" resolve to the same layer.

    Args:
        name (str): The raw name.

    Returns:
        str: The normalized name.
    """
    return name.replace("_", "").lower()


def register_layer(
    *,
    names: tuple[str, ...] | None = None,
    test_input_dimensions: tuple[int, ...] = (4,),
    test_kwargs: dict[str, Any] | None = None,
    recurrent: bool = False,
    skip_test: bool = False,
    skip_reason: str | None = None,
) -> Callable[[L], L]:
    """Decorator factory to register a layer class with metadata.

    The class is registered under all provided names, or under its class
    name if `names` is None.

    Args:
        names (tuple[str, ...] | None): Names to register under.
            If None, the class name is used.
        test_input_dimensions (tuple[int, ...]): Per-point input shape for testing.
        test_kwargs (dict[str, Any] | None): Constructor arguments for testing.
        recurrent (bool): Whether the layer keeps memory across time steps.
        skip_test (bool): Whether to skip automated finite difference testing.
        skip_reason (str | None): Reason for skipping. Required if skip_test=True.

    Returns:
        Callable[[L], L]: Decorator that registers the layer class.

    Raises:
        ValueError: If skip_test=True but skip_reason is not provided.
        ValueError: If a name is already taken by another layer.
    """
    if skip_test and not skip_reason:
        raise ValueError("skip_reason is required when skip_test=True")

    def decorator(layer_cls: L) -> L:
        layer_names = names if names is not None else (layer_cls.__name__,)
        spec = LayerSpec(
            layer_cls=layer_cls,
            names=layer_names,
            test_input_dimensions=test_input_dimensions,
            test_kwargs=dict(test_kwargs or {}),
            recurrent=recurrent,
            skip_test=skip_test,
            skip_reason=skip_reason,
        )
        for name in layer_names:
            key = normalize_layer_name(name)
            existing = _LAYER_REGISTRY.get(key)
            if existing is not None and existing.layer_cls is not layer_cls:
                raise ValueError(
                    f'Layer name "{name}" is already registered for '
                    f'"{existing.layer_cls.__name__}"'
                )
            _LAYER_REGISTRY[key] = spec
        return layer_cls

    return decorator


def get_layer_spec(name: str) -> LayerSpec:
    """Gets the registered specification for a layer name.

    Args:
        name (str): Name or alias of the layer.

    Raises:
        KeyError: If no layer is registered under `name`.

    Returns:
        LayerSpec: The layer specification.
    """
    key = normalize_layer_name(name)
    if key not in _LAYER_REGISTRY:
        raise KeyError(f'No layer registered under the name "{name}"')
    return _LAYER_REGISTRY[key]


def get_layer(name: str) -> type[Layer]:
    """Gets the layer class registered under `name`.

    Args:
        name (str): Name or alias of the layer.

    Returns:
        type[Layer]: The layer class.
    """
    return get_layer_spec(name).layer_cls


def registered_layers() -> list[LayerSpec]:
    """All distinct layer specifications, in registration order.

    Returns:
        list[LayerSpec]: One entry per layer class, aliases removed.
    """
    seen: set[int] = set()
    unique: list[LayerSpec] = []
    for spec in _LAYER_REGISTRY.values():
        if id(spec) not in seen:
            seen.add(id(spec))
            unique.append(spec)
    return unique


__all__ = [
    "LayerSpec",
    "get_layer",
    "get_layer_spec",
    "normalize_layer_name",
    "register_layer",
    "registered_layers",
]
