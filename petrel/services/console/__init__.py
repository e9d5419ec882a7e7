"""Console tailer service."""

from petrel.services.console.tailer import (
    ConsoleLine,
    ConsoleTailer,
    get_console_tailer,
    reset_console_tailer,
)

__all__ = ["ConsoleLine", "ConsoleTailer", "get_console_tailer", "reset_console_tailer"]
