"""PTY management — one shell per session on its own pseudo-terminal.

Each live pty has a dedicated reader thread that decodes output, hands it
to the session's output listener and republishes it on the event wire.
"""

from maestro.pty.manager import OutputListener, PtyManager
from maestro.pty.session import PtySession

__all__ = [
    "OutputListener",
    "PtyManager",
    "PtySession",
]
