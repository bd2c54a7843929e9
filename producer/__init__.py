"""Producer Console — fleet control for remote streamers and recorders.

Discovers capture devices in a room over a pub/sub transport, keeps one
canonical registry per device kind, dispatches remote commands and opens a
single live preview.

Quickstart::

    from producer.config import ConsoleConfig
    from producer.session import ConsoleSession

    session = ConsoleSession(ConsoleConfig.from_env())
    await session.connect("studio-a")
    await session.streamer_commands.start_stream("cam1")
"""

__version__ = "1.0.0"
