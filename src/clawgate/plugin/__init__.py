"""Plugin system for clawgate.

Chat channels are pluggy plugins. WhatsApp and Slack ship built in and are
registered from a static table; third-party channels register through the
``clawgate`` entry-point group.

Usage:
    from clawgate.plugin import get_plugin_manager, load_channels

    pm = get_plugin_manager()
    channels = load_channels(pm, context)
"""

from __future__ import annotations

import asyncio
import importlib
import warnings
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import pluggy

from clawgate.chat.normalizer import ChannelNormalizer
from clawgate.config import get_settings
from clawgate.logger import logger
from clawgate.plugin.hookspecs import ClawgateSpec
from clawgate.state import RouterState
from clawgate.types import Channel, InboundMessage

__all__ = [
    "ChannelPluginContext",
    "get_plugin_manager",
    "load_channels",
]

# Static registry of built-in plugins: (module_path, class_name, config_key).
# config_key is checked against [plugins.<key>].enabled in config.toml.
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("clawgate.chat.channels.slack", "SlackChannelPlugin", "slack"),
    ("clawgate.chat.channels.whatsapp", "WhatsAppPlugin", "whatsapp"),
]


@dataclass(frozen=True)
class ChannelPluginContext:
    """Context passed to channel plugins via the create hook."""

    normalizer: ChannelNormalizer
    state: RouterState
    on_message: Callable[[InboundMessage], Awaitable[None]]
    on_interactive: Callable[[str, str], Awaitable[str]] | None = None
    on_fatal: Callable[[str], Awaitable[None]] | None = None


def get_plugin_manager() -> pluggy.PluginManager:
    """Create the plugin manager with built-in and entry-point plugins registered."""
    pm = pluggy.PluginManager("clawgate")
    pm.add_hookspecs(ClawgateSpec)

    s = get_settings()

    # neonize calls asyncio.get_event_loop() at import time; make sure a loop
    # exists when imported from a sync context.
    tmp_loop = None
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        tmp_loop = asyncio.new_event_loop()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DeprecationWarning)
            asyncio.set_event_loop(tmp_loop)

    for module_path, class_name, config_key in _BUILTIN_PLUGIN_SPECS:
        if not s.plugin_enabled(config_key):
            logger.info("Plugin disabled via config", plugin=config_key)
            continue
        try:
            mod = importlib.import_module(module_path)
        except ImportError:
            logger.debug("Plugin skipped (optional dependency missing)", plugin=config_key)
            continue
        pm.register(getattr(mod, class_name)(), name=f"builtin-{config_key}")
        logger.info("Registered built-in plugin", name=config_key)

    discovered = pm.load_setuptools_entrypoints("clawgate")

    if tmp_loop is not None:
        tmp_loop.close()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DeprecationWarning)
            asyncio.set_event_loop(None)
    if discovered:
        logger.info("Discovered third-party plugins", count=discovered)

    logger.info("Plugin manager ready", plugins=[pm.get_name(p) for p in pm.get_plugins()])
    return pm


def load_channels(pm: pluggy.PluginManager, context: ChannelPluginContext) -> list[Channel]:
    """Create channel instances from plugin hooks."""
    channels: list[Channel] = []
    for candidate in pm.hook.clawgate_create_channel(context=context):
        if candidate is None:
            continue
        if isinstance(candidate, list | tuple):
            channels.extend(c for c in candidate if c is not None)
        else:
            channels.append(candidate)
    channels.sort(key=lambda ch: getattr(ch, "name", ""))

    if channels:
        names = [getattr(ch, "name", "?") for ch in channels]
        logger.info("Loaded channel plugins", channels=names)
    else:
        logger.warning("No channel plugins loaded; only email and IPC will be served")
    return channels
