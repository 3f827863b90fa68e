"""
Resolver registry.

Each resolver module calls ``register()`` at import time. ``load_all()``
imports every module in ``resolvers/`` so a new platform is picked up by
dropping a file next to the others; ``build_resolvers()`` then validates each
platform's config section and instantiates the enabled ones.
"""

from __future__ import annotations

import importlib
import pkgutil
from pathlib import Path
from typing import Any

from pydantic import ValidationError

import services.logger as log

l = log.get_logger()

_REGISTRY: dict[str, tuple[type, type]] = {}


def register(name: str, config_cls: type, resolver_cls: type) -> None:
    """Register a resolver under *name*.

    Args:
        name:         Config section key (e.g. ``"bili"``).
        config_cls:   Pydantic model class for the section.
        resolver_cls: ``BaseResolver`` subclass to instantiate.
    """
    _REGISTRY[name] = (config_cls, resolver_cls)


def all_resolvers() -> dict[str, tuple[type, type]]:
    """Return a snapshot of ``{name: (config_cls, resolver_cls)}``."""
    return dict(_REGISTRY)


def load_all() -> None:
    import resolvers as _pkg
    for _, mod_name, _ in pkgutil.iter_modules(_pkg.__path__):
        if mod_name != "registry":
            importlib.import_module(f"resolvers.{mod_name}")


def build_resolvers(raw: dict[str, Any], http, media_dirs: list[Path] | None = None) -> list:
    """Instantiate every enabled resolver from the *raw* config mapping.

    A missing section means defaults. Raises ``ValidationError`` for the first
    invalid section after logging all of them.
    """
    built = []
    first_error: ValidationError | None = None
    for name, (config_cls, resolver_cls) in _REGISTRY.items():
        try:
            config = config_cls.model_validate(raw.get(name) or {})
        except ValidationError as exc:
            l.critical(f"Config error in {name}:\n{exc}")
            first_error = first_error or exc
            continue
        if not config.enabled:
            l.info(f"Resolver disabled: {name}")
            continue
        built.append(resolver_cls(config, http, media_dirs))
        l.info(f"Registered resolver: {name}")
    if first_error is not None:
        raise first_error
    return built
