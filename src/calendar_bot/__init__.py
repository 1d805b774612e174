"""calendar-bot: calendar feed sync and Matrix reminder dispatch."""

__version__ = "0.1.0"
