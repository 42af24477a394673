"""
Parser discovery: every concrete :class:`Parser` defined in a module of a
``plugins/<name>/`` package is registered as ``<name>.<ClassName>``.
"""

import importlib
import inspect
import logging
import pkgutil
from typing import Dict, Iterator, Tuple, Type

from .interfaces import Parser

logger = logging.getLogger(__name__)

PLUGIN_PACKAGE = "plugins"

_REGISTRY: Dict[str, Type[Parser]] = {}


def _plugin_modules() -> Iterator[Tuple[str, str]]:
    """Yield ``(plugin_name, module_name)`` for each plugin module."""
    root = importlib.import_module(PLUGIN_PACKAGE)
    for plugin in pkgutil.iter_modules(root.__path__):
        if not plugin.ispkg or plugin.name.startswith("_"):
            continue
        package = importlib.import_module(f"{PLUGIN_PACKAGE}.{plugin.name}")
        for module in pkgutil.iter_modules(package.__path__):
            if not module.name.startswith("_"):
                yield plugin.name, f"{package.__name__}.{module.name}"


def _parsers_in(module) -> Iterator[Type[Parser]]:
    for _, obj in inspect.getmembers(module, inspect.isclass):
        if issubclass(obj, Parser) and not inspect.isabstract(obj) and obj.__module__ == module.__name__:
            yield obj


def refresh_registry() -> None:
    """Re-scan the plugin packages; a module that fails to import is skipped."""
    _REGISTRY.clear()
    try:
        modules = sorted(_plugin_modules())
    except ImportError as e:
        logger.warning(f"No plugin package '{PLUGIN_PACKAGE}': {e}")
        return

    loaded = 0
    for plugin_name, module_name in modules:
        try:
            module = importlib.import_module(module_name)
        except Exception as e:
            logger.error(f"Failed to load plugin module {module_name}: {e}")
            continue
        loaded += 1
        for parser_cls in _parsers_in(module):
            key = f"{plugin_name}.{parser_cls.__name__}"
            _REGISTRY[key] = parser_cls
            logger.debug(f"Registered parser: {key}")

    logger.info(f"Plugin discovery complete: {loaded} modules, {len(_REGISTRY)} parsers")


def get(class_path: str) -> Type[Parser]:
    """Look up a parser by ``plugin.ClassName``; ``KeyError`` lists what exists."""
    if not _REGISTRY:
        refresh_registry()
    try:
        return _REGISTRY[class_path]
    except KeyError:
        raise KeyError(f"Parser '{class_path}' not found. Available: {sorted(_REGISTRY)}") from None


def list_available() -> Dict[str, Type[Parser]]:
    if not _REGISTRY:
        refresh_registry()
    return dict(_REGISTRY)
