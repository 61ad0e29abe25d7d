"""
termplug CLI - Rich Output Helpers

Functions:
    print_table      - Print a formatted table
    print_status     - Print checks with pass/fail indicators
    print_json       - Print formatted JSON
    print_error      - Print error message
    print_success    - Print success message
    print_warning    - Print warning message
    print_key_value  - Print aligned key/value pairs
    print_bullet_list - Print a bullet list
    format_bytes     - Human-readable byte sizes
"""

from __future__ import annotations

import json
from typing import Any, Optional

from rich.console import Console
from rich.json import JSON
from rich.markup import escape
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

STATUS_PASS = "[green]PASS[/green]"
STATUS_FAIL = "[red]FAIL[/red]"


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[str]],
    styles: Optional[list[str]] = None,
    show_lines: bool = False,
) -> None:
    """
    Print a rich table.

    Args:
        title: Table title
        columns: Column headers
        rows: Table rows (list of lists)
        styles: Optional column styles
        show_lines: Whether to show row separator lines
    """
    table = Table(title=title, show_lines=show_lines)

    for i, col in enumerate(columns):
        style = styles[i] if styles and i < len(styles) else None
        table.add_column(col, style=style)

    for row in rows:
        padded_row = list(row) + [""] * (len(columns) - len(row))
        table.add_row(*padded_row[:len(columns)])

    console.print(table)


def print_status(checks: list[tuple[str, bool, str]]) -> None:
    """
    Print checks with pass/fail indicators.

    Args:
        checks: List of (name, passed, message) tuples
    """
    for name, passed, message in checks:
        icon = STATUS_PASS if passed else STATUS_FAIL
        color = "green" if passed else "red"
        console.print(f"  {icon} [cyan]{name}[/cyan]: [{color}]{escape(message)}[/{color}]")


def print_json(data: dict | list, indent: int = 2, highlight: bool = True) -> None:
    """
    Print formatted JSON.

    Args:
        data: Data to print as JSON
        indent: Indentation level
        highlight: Whether to syntax highlight
    """
    json_str = json.dumps(data, indent=indent, default=str)
    if highlight:
        console.print(JSON(json_str))
    else:
        console.print(json_str, markup=False, highlight=False)


def print_error(message: str, details: Optional[str] = None, hint: Optional[str] = None) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    if details:
        err_console.print(f"[dim]{escape(details)}[/dim]")
    if hint:
        err_console.print(f"[yellow]Hint:[/yellow] {escape(hint)}")


def print_success(message: str) -> None:
    console.print(f"[bold green]Success:[/bold green] {escape(message)}")


def print_warning(message: str) -> None:
    console.print(f"[bold yellow]Warning:[/bold yellow] {escape(message)}")


def print_key_value(items: list[tuple[str, Any]], title: Optional[str] = None) -> None:
    """
    Print key-value pairs with aligned keys.

    Args:
        items: List of (key, value) tuples
        title: Optional title
    """
    if title:
        console.print(f"[bold]{escape(title)}[/bold]")

    max_key_len = max(len(str(k)) for k, _ in items) if items else 0
    for key, value in items:
        padded_key = str(key).ljust(max_key_len)
        console.print(f"  [cyan]{padded_key}[/cyan]: {escape(str(value))}")


def print_bullet_list(items: list[str], title: Optional[str] = None) -> None:
    if title:
        console.print(f"[bold]{escape(title)}[/bold]")
    if not items:
        console.print("  [dim](none)[/dim]")
    for item in items:
        console.print(f"  [dim]*[/dim] {escape(item)}")


def format_bytes(size: int) -> str:
    """
    Format a byte count for display.

    Args:
        size: Size in bytes

    Returns:
        String such as "10.0 MB"
    """
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"
