"""Console utility functions for formatting and output."""

import logging
from typing import Any, List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.theme import Theme

# Status symbols for consistent iconography
STATUS_SYMBOLS = {
    'success': '✨',
    'running': '🚀',
    'info': '💡',
    'warning': '⚠️',
    'error': '❌',
    'check': '✅',
    'list': '📋',
    'lock': '🔒',
    'package': '📦',
}

_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "muted": "dim white",
})

_console = None
_err_console = None


def _get_console() -> Console:
    """Get the shared Rich console."""
    global _console
    if _console is None:
        _console = Console(theme=_THEME, highlight=False)
    return _console


def _get_err_console() -> Console:
    global _err_console
    if _err_console is None:
        _err_console = Console(theme=_THEME, stderr=True, highlight=False)
    return _err_console


def _rich_echo(message: str, color: str = "white", bold: bool = False, symbol: Optional[str] = None,
               stderr: bool = False):
    """Echo message with Rich formatting."""
    if symbol and symbol in STATUS_SYMBOLS:
        message = f"{STATUS_SYMBOLS[symbol]} {message}"
    style = f"bold {color}" if bold else color
    console = _get_err_console() if stderr else _get_console()
    console.print(message, style=style, markup=False)


def _rich_success(message: str, symbol: Optional[str] = None):
    """Display success message with green color and bold styling."""
    _rich_echo(message, color="green", symbol=symbol, bold=True)


def _rich_error(message: str, symbol: Optional[str] = None):
    """Display error message with red color."""
    _rich_echo(message, color="red", symbol=symbol, stderr=True)


def _rich_warning(message: str, symbol: Optional[str] = None):
    """Display warning message with yellow color."""
    _rich_echo(message, color="yellow", symbol=symbol)


def _rich_info(message: str, symbol: Optional[str] = None):
    """Display info message with blue color."""
    _rich_echo(message, color="blue", symbol=symbol)


def _create_table(title: str, columns: Sequence[str], rows: List[Sequence[Any]]) -> Table:
    """Create a Rich table with one bold first column."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    for i, column in enumerate(columns):
        table.add_column(column, style="bold white" if i == 0 else None)
    for row in rows:
        table.add_row(*[("" if cell is None else str(cell)) for cell in row])
    return table


def setup_logging(verbose: bool = False):
    """Route library logging through Rich; DEBUG when verbose."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_get_err_console(), show_path=False)],
        force=True,
    )
