"""
Rich console utilities for the developer CLI.
Status messages, tables and ranked snippet rendering.
"""

import sys
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Union

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
import structlog

from src.utils.error_handlers import RetrievalBaseError, format_error_for_user

logger = structlog.get_logger(__name__)

SNIPPET_PREVIEW_LENGTH = 300


class RetrievalConsole:
    """Console wrapper with consistent styling for CLI output."""

    def __init__(self, width: Optional[int] = None, file: Any = None):
        self.console = Console(width=width, file=file or sys.stdout, color_system="auto")
        self.colors = {
            'primary': 'bright_blue',
            'success': 'bright_green',
            'warning': 'bright_yellow',
            'error': 'bright_red',
            'info': 'bright_blue',
            'muted': 'grey62',
        }

    def print_status(self, message: str, status: str = "info"):
        """Print status message with appropriate styling."""
        markers = {
            'info': '[i]',
            'success': '[+]',
            'warning': '[!]',
            'error': '[x]',
        }
        marker = markers.get(status, '[i]')
        self.console.print(Text(f"{marker} {message}", style=self.colors.get(status, self.colors['info'])))

    def print_error(self, error: Union[str, Exception, RetrievalBaseError]):
        """Print an error; taxonomy errors include their recovery suggestions."""
        if isinstance(error, RetrievalBaseError):
            body = format_error_for_user(error)
        else:
            body = f"Error: {error}"
        self.console.print(Panel(body, title="Error", border_style=self.colors['error'], box=box.ROUNDED))

    def print_separator(self, title: str = ""):
        self.console.print(Rule(title, style=self.colors['muted']))

    def print_table(self, rows: List[Dict[str, Any]], title: Optional[str] = None):
        """Print a list of homogeneous dicts as a table."""
        if not rows:
            self.print_status("Nothing to show", "warning")
            return

        table = Table(title=title, box=box.SIMPLE_HEAVY, header_style=f"bold {self.colors['primary']}")
        for column in rows[0].keys():
            table.add_column(str(column))
        for row in rows:
            table.add_row(*[str(value) for value in row.values()])
        self.console.print(table)

    def print_snippets(self, response):
        """Render a RetrievalResponse: ranked snippets, then citations."""
        if response.is_empty:
            reason = "all search branches failed" if response.all_branches_failed else "no relevant knowledge found"
            self.print_status(f"No snippets ({reason})", "warning")
            return

        for rank, snippet in enumerate(response.snippets, 1):
            citation = snippet.citation
            marker = " HIGH" if snippet.high_relevance else ""
            header = (
                f"#{rank} [{citation.citation_number if citation else '-'}] {snippet.document_title} "
                f"(chunk {snippet.chunk_index}, {snippet.match_type.value}, score {snippet.score:.3f}{marker})"
            )
            content = snippet.content
            if len(content) > SNIPPET_PREVIEW_LENGTH:
                content = content[:SNIPPET_PREVIEW_LENGTH] + "..."
            self.console.print(Panel(content, title=header, title_align="left", box=box.ROUNDED))

        self.print_separator("Sources")
        for citation in response.citations:
            self.console.print(f"[{citation.citation_number}] {citation.document_title} ({citation.document_id})")

    @contextmanager
    def show_status(self, message: str):
        """Spinner while a long operation runs."""
        with self.console.status(message):
            yield


_console: Optional[RetrievalConsole] = None


def create_console(width: Optional[int] = None, file: Any = None) -> RetrievalConsole:
    """Create a console instance."""
    return RetrievalConsole(width=width, file=file)


def get_console() -> RetrievalConsole:
    """Get the shared console instance."""
    global _console
    if _console is None:
        _console = create_console()
    return _console
