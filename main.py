import logging
import os
import subprocess
import sys
import webbrowser
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from circulation import Circulation
from config import settings
from library import Library
from members import Members
from utils.ui_helpers import set_output_mode, print_import_result, print_overdue_result, print_stats_result

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

APP_NAME = "Library CLI"

DEFAULT_ADMIN_NAME = "Super Admin"
DEFAULT_ADMIN_EMAIL = "admin@gmail.com"
DEFAULT_ADMIN_PASSWORD = "admin123"

console = Console()

# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)

@app.command("seed")
def cli_seed(
    destroy: bool = typer.Option(False, "--destroy", "-d", help="Delete every user instead of seeding"),
    email: str = typer.Option(DEFAULT_ADMIN_EMAIL, "--email", help="Admin email"),
    password: str = typer.Option(DEFAULT_ADMIN_PASSWORD, "--password", help="Admin password"),
):
    """Create the first admin account (or wipe all users with --destroy)."""
    Library()
    members = Members()
    if destroy:
        removed = members.destroy_users()
        print(f"Data Destroyed! {removed} users removed.")
        return

    try:
        admin = members.seed_admin(DEFAULT_ADMIN_NAME, email, password)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    if admin is None:
        print("Admin already exists. Seeding skipped.")
        return
    print("Admin User Imported Successfully!")
    print(f"Email: {admin.email}")
    print(f"Id: {admin.id}")

@app.command("add-department")
def cli_add_department(code: str, name: str):
    """Register a department code so books and students can be filed under it."""
    lib = Library()
    try:
        department = lib.add_department(code, name)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Department {department.code} ({department.name}) added.")

@app.command("import-csv")
def cli_import_csv(file_path: Path = typer.Argument(..., help="CSV with Title, Author, ISBN, Department, Quantity")):
    """Bulk import books from a CSV file."""
    if not file_path.exists():
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    lib = Library()
    text = file_path.read_text(encoding="utf-8-sig")
    result = lib.import_books_csv(text)
    print_import_result(result)

@app.command("stats")
def cli_stats():
    """Show catalog statistics."""
    lib = Library()
    print_stats_result(lib.get_statistics())

@app.command("overdue")
def cli_overdue():
    """List issued copies past their due date with the fine accrued so far."""
    Library()
    print_overdue_result(Circulation().overdue_issues())

@app.command("serve")
def cli_serve(
    no_browser: bool = typer.Option(False, "--no-browser", help="Do not open the API docs in a browser"),
    reload: bool = typer.Option(False, "--reload", help="Restart the server on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if not no_browser:
        webbrowser.open(url)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, env=os.environ.copy())
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not launch uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
