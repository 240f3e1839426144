"""DeskPilot session and tool-preference storage."""

__version__ = "0.3.0"
