"""
Replay service layer: persistence, batch orchestration, labeling and scoring.

Most callers only need ``build_commands`` (or ``app.create_app`` for the
HTTP surface); the individual services are importable for tests and
custom wiring.
"""

from .commands import ReplayCommands, build_commands
from .config import Settings, get_settings

__all__ = ["ReplayCommands", "build_commands", "Settings", "get_settings"]
