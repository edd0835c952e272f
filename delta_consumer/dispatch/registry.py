"""Transform registry, resolved once at startup from configuration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from delta_consumer.dispatch.passthrough import PassthroughTransform
from delta_consumer.dispatch.single_graph import SingleGraphTransform
from delta_consumer.exceptions import DispatchConfigError

if TYPE_CHECKING:
    from collections.abc import Callable

    from delta_consumer.config import Settings
    from delta_consumer.dispatch.base import Transform

logger = logging.getLogger(__name__)

TRANSFORMS: dict[str, Callable[[Settings], Transform]] = {
    SingleGraphTransform.name: SingleGraphTransform.from_settings,
    PassthroughTransform.name: PassthroughTransform.from_settings,
}


def register_transform(name: str, factory: Callable[[Settings], Transform]) -> None:
    """Make a custom transform selectable by ``name`` in the dispatch settings."""
    if name in TRANSFORMS:
        msg = f"Transform {name!r} is already registered"
        raise DispatchConfigError(msg)
    TRANSFORMS[name] = factory


def resolve_transform(name: str, settings: Settings) -> Transform:
    """Build the transform registered as ``name``.

    Raises DispatchConfigError if no transform has that name.
    """
    factory = TRANSFORMS.get(name)
    if factory is None:
        msg = f"Unknown transform: {name!r}. Available: {list_transforms()}"
        raise DispatchConfigError(msg)
    transform = factory(settings)
    logger.info("Using %s transform", name)
    return transform


def list_transforms() -> list[str]:
    """Return the names of the registered transforms."""
    return list(TRANSFORMS.keys())
