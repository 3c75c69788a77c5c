"""
CLI interface for Chat Cost Guard.

Provides command-line access to usage records, budgets and a console chat.
"""

import logging
import math
import sys

import typer
from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from chat_cost_guard.config.loader import BotConfig, load_config
from chat_cost_guard.config.logging import configure_logging
from chat_cost_guard.core.budget import get_user_budget, remaining_budget
from chat_cost_guard.core.errors import BudgetExceeded, ChatCostGuardError
from chat_cost_guard.core.ledger import LedgerStore
from chat_cost_guard.core.session import ChatSession
from chat_cost_guard.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "chat_cost_guard.yaml"
EXIT_COMMANDS = {"/exit", "/quit"}
RESET_COMMAND = "/reset"

ConfigOption = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    help="Path to the YAML configuration file"
)


def _load(config_path: str) -> BotConfig:
    """Load configuration and set up logging, exiting on errors."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    configure_logging(config.logging.level)
    return config


def _ledgers(config: BotConfig) -> LedgerStore:
    pricing = config.pricing
    return LedgerStore(
        get_repository(config.storage.db_path),
        token_price=pricing.token_price,
        image_prices=pricing.image_prices,
        transcription_price=pricing.transcription_price,
    )


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    if math.isinf(amount):
        return "unlimited"
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Chat Cost Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Chat Cost Guard - Use --help to see available commands")


@app.command()
def init(config_path: str = ConfigOption):
    """Initialize the usage database."""
    config = _load(config_path)
    try:
        initialize_schema(config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except ChatCostGuardError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(user_id: str, config_path: str = ConfigOption):
    """Show cost and usage of a user for today, this month and all time."""
    config = _load(config_path)
    try:
        ledger = _ledgers(config).get(user_id)
        cost = ledger.current_cost()
        tokens_today, tokens_month = ledger.token_usage()
        images_today, images_month = ledger.image_usage()
        duration = ledger.transcription_duration()
    except ChatCostGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage of {ledger.user_name} ({ledger.user_id})")
    table.add_column("Metric")
    table.add_column("Today", justify="right")
    table.add_column("This month", justify="right")
    table.add_column("All time", justify="right")
    table.add_row(
        "Cost",
        _format_currency(cost.today),
        _format_currency(cost.month),
        _format_currency(cost.all_time),
    )
    table.add_row("Chat tokens", f"{tokens_today:,}", f"{tokens_month:,}", "")
    table.add_row("Images", str(images_today), str(images_month), "")
    table.add_row(
        "Transcription",
        f"{duration.today_minutes} min {duration.today_seconds:g} s",
        f"{duration.month_minutes} min {duration.month_seconds:g} s",
        "",
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def budget(user_id: str, config_path: str = ConfigOption):
    """Show the budget ceiling and the remaining budget of a user."""
    config = _load(config_path)
    try:
        ledger = _ledgers(config).get(user_id)
        ceiling = get_user_budget(user_id, config.budget)
        remaining = remaining_budget(user_id, ledger, config.budget)
    except ChatCostGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if ceiling is None:
        console.print(f"[bold]User {user_id}[/bold] is a guest")
        ceiling = config.budget.guest_budget
    console.print(f"Budget period: {config.budget.period.value}")
    console.print(f"Budget: {_format_currency(ceiling)}")
    color = "green" if remaining > 0 else "red"
    console.print(f"Remaining: [{color}]{_format_currency(remaining)}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def backfill(user_id: str, config_path: str = ConfigOption):
    """Recompute the all-time cost of a user from the usage history."""
    config = _load(config_path)
    pricing = config.pricing
    try:
        ledger = _ledgers(config).get(user_id)
        total = ledger.initialize_all_time_cost(
            pricing.token_price, pricing.image_prices, pricing.transcription_price
        )
    except ChatCostGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] All-time cost of user {user_id}: ${total:,.6f}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def chat(
    chat_id: str,
    user_id: str,
    config_path: str = ConfigOption,
    stream: bool = typer.Option(
        True,
        "--stream/--no-stream",
        help="Stream answers while they are generated"
    ),
):
    """
    Chat with the assistant from the console.

    Type /reset to start the conversation over and /exit to leave.
    """
    config = _load(config_path)
    try:
        session = ChatSession.from_config(config)
    except ChatCostGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    while True:
        try:
            query = console.input("[bold]You:[/] ").strip()
        except EOFError:
            break
        if not query:
            continue
        if query in EXIT_COMMANDS:
            break
        if query == RESET_COMMAND:
            session.reset_chat(chat_id)
            console.print("[dim]Conversation reset.[/]")
            continue

        try:
            if stream:
                with Live(Text(""), console=console, refresh_per_second=8) as live:
                    for snapshot in session.get_chat_response_stream(chat_id, user_id, query):
                        live.update(Text(snapshot))
            else:
                response = session.get_chat_response(chat_id, user_id, query)
                console.print(response.answer)
        except BudgetExceeded as e:
            console.print(f"[yellow]{str(e)}[/]")
        except ChatCostGuardError as e:
            logger.debug("Chat request failed", exc_info=True)
            console.print(f"[red]Error:[/] {str(e)}")

    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
