"""Pluggy hook specifications for clawgate plugins.

All hooks use the "clawgate" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("clawgate")


class ClawgateSpec:
    """Hook specifications for clawgate plugins."""

    @hookspec
    def clawgate_create_channel(self, context: Any) -> Any | None:
        """Create a communication channel instance.

        Channels are long-running services that receive messages from an
        external platform and deliver replies back to it.

        Args:
            context: ChannelPluginContext with the normalizer, router state
                and inbound callbacks

        Returns:
            Channel instance implementing the Channel protocol, a list of
            them, or None if this plugin doesn't provide a channel
        """
