import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print catalog statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: the stats object as-is
    - rich: Panel with the main metrics and a per-status breakdown
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    by_status = stats.get("copies_by_status", {})

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Total Books:[/] {stats.get('total_books', 0)}\n"
            f"[bold]Total Copies:[/] {stats.get('total_copies', 0)}\n"
            f"[bold]Available Copies:[/] {stats.get('available_copies', 0)}\n"
            f"[bold]Unique Authors:[/] {stats.get('unique_authors', 0)}"
        )
        for status, count in by_status.items():
            content += f"\n  {status}: {count}"
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_books', 0)}")
        print(f"Total Copies: {stats.get('total_copies', 0)}")
        print(f"Available Copies: {stats.get('available_copies', 0)}")
        print(f"Unique Authors: {stats.get('unique_authors', 0)}")
        for status, count in by_status.items():
            print(f"{status}: {count}")

def print_overdue_result(items: List[Dict[str, Any]]) -> None:
    """Print overdue issues; each item carries days_overdue and accrued_fine."""
    mode = get_output_mode()

    if not items:
        print("No overdue books.")
        return

    if mode == "json":
        payload = [
            {
                "copy_number": i.get("copy_number"),
                "student": i.get("student_name"),
                "register_number": i.get("register_number"),
                "due_date": i.get("due_date"),
                "days_overdue": i.get("days_overdue"),
                "accrued_fine": i.get("accrued_fine"),
            }
            for i in items
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏰ Overdue", show_lines=True, header_style="bold cyan")
        table.add_column("Copy", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Student", style="white")
        table.add_column("Due", style="yellow")
        table.add_column("Days", justify="right")
        table.add_column("Fine", justify="right", style="red")
        for i in items:
            table.add_row(
                i.get("copy_number") or "",
                i.get("book_title") or "",
                i.get("student_name") or "Unknown",
                (i.get("due_date") or "")[:10],
                str(i.get("days_overdue", 0)),
                f"{i.get('accrued_fine', 0):g}",
            )
        _console.print(table)
    else:
        for i in items:
            print(
                f"{i.get('copy_number')} - {i.get('student_name') or 'Unknown'} - "
                f"{i.get('days_overdue', 0)} days overdue (fine {i.get('accrued_fine', 0):g})"
            )

def print_import_result(result: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(result, ensure_ascii=False))
        return

    errors = result.get("errors", [])
    if mode == "rich":
        content = f"[bold]Added:[/] {result.get('added', 0)}\n[bold]Updated:[/] {result.get('updated', 0)}"
        _console.print(Panel.fit(content, title=result.get("message", "Import"), border_style="green"))
        for error in errors:
            _console.print(f"[red]•[/] {error}")
    else:
        print(f"{result.get('message', 'Import')}: {result.get('added', 0)} added, {result.get('updated', 0)} updated")
        for error in errors:
            print(f"Error: {error}")
