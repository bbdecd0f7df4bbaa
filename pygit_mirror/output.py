"""Output handler implementations: console, null, buffered."""

from __future__ import annotations

from colorama import Fore, Style
from tqdm import tqdm

from pygit_mirror.protocols import OutputHandler

SECTION_WIDTH = 50


class ConsoleOutputHandler:
    """Console output with colors, written through tqdm so progress bars survive."""

    def __init__(self, verbose: bool = False):
        """Create a console handler. Set verbose=True to enable debug output."""
        self.verbose = verbose

    def _write(self, message: str, indent: int = 0, color: str = '') -> None:
        text = f"{color}{message}{Style.RESET_ALL}" if color else message
        tqdm.write("  " * indent + text)

    def info(self, message: str, indent: int = 0) -> None:
        self._write(message, indent)

    def success(self, message: str, indent: int = 0) -> None:
        self._write(message, indent, Fore.GREEN)

    def warning(self, message: str, indent: int = 0) -> None:
        self._write(message, indent, Fore.YELLOW)

    def error(self, message: str, indent: int = 0) -> None:
        self._write(message, indent, Fore.RED)

    def section(self, title: str) -> None:
        """Print a section header with a divider line."""
        tqdm.write("")
        tqdm.write(title)
        tqdm.write("-" * SECTION_WIDTH)

    def debug(self, message: str) -> None:
        """Print a cyan debug message (only when verbose is enabled)."""
        if self.verbose:
            self._write(f"[DEBUG] {message}", color=Fore.CYAN)


class NullOutputHandler:
    """Silent output handler for tests and JSON mode."""

    def info(self, message: str, indent: int = 0) -> None:
        pass

    def success(self, message: str, indent: int = 0) -> None:
        pass

    def warning(self, message: str, indent: int = 0) -> None:
        pass

    def error(self, message: str, indent: int = 0) -> None:
        pass

    def section(self, title: str) -> None:
        pass

    def debug(self, message: str) -> None:
        pass


class BufferedOutputHandler:
    """Collects messages from one worker thread for printing in one block."""

    def __init__(self):
        self.messages: list[str] = []

    def _add(self, message: str, indent: int = 0, color: str = '') -> None:
        text = f"{color}{message}{Style.RESET_ALL}" if color else message
        self.messages.append("  " * indent + text)

    def info(self, message: str, indent: int = 0) -> None:
        self._add(message, indent)

    def success(self, message: str, indent: int = 0) -> None:
        self._add(message, indent, Fore.GREEN)

    def warning(self, message: str, indent: int = 0) -> None:
        self._add(message, indent, Fore.YELLOW)

    def error(self, message: str, indent: int = 0) -> None:
        self._add(message, indent, Fore.RED)

    def section(self, title: str) -> None:
        self.messages.extend(["", title, "-" * SECTION_WIDTH])

    def debug(self, message: str) -> None:
        """Dropped; debug output is not interleaved in parallel mode."""

    def flush_to(self, target: OutputHandler) -> None:
        """Write all buffered messages to a target handler and clear the buffer."""
        for msg in self.messages:
            target.info(msg)
        self.messages.clear()
