# /commengage/app.py
"""
Interactive CLI for the CommEngage answer engine.
Lets a moderator post content, manage help requests, read AI summaries, and
ask questions in a conversational session, all against the local store.
"""
import asyncio
import sys
import uuid

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table, box

from .config import EMBEDDING_MODEL_NAME, LOCAL_MODEL_NAME, API_MODEL_NAME, USE_API_LLM, console
from .errors import EngineError, UpstreamTimeout
from .observability import get_logger
from .service import AnswerService

logger = get_logger(__name__)

MENU_CHOICES = ["post", "help", "list", "edit", "delete", "volunteer", "summary", "ask", "quit"]


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    model = API_MODEL_NAME if USE_API_LLM else LOCAL_MODEL_NAME
    console.print(Panel(
        "[bold magenta]CommEngage - Community Answers CLI[/bold magenta]",
        subtitle=f"[cyan]{model} + {EMBEDDING_MODEL_NAME}[/cyan]",
        expand=False
    ))


def render_content_table(service: AnswerService):
    items = service.store.list_items()
    if not items:
        console.print("[yellow]No community content yet.[/yellow]")
        return
    table = Table(title="Community Content", box=box.ROUNDED)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Title")
    table.add_column("Category")
    table.add_column("Version", justify="right")
    table.add_column("Indexed", justify="center")
    for item in items:
        indexed = service.index.entry_version(item.id) == item.version
        table.add_row(
            item.id,
            item.kind.value,
            item.title or item.text[:40],
            item.category,
            str(item.version),
            "[green]yes[/green]" if indexed else "[yellow]pending[/yellow]",
        )
    console.print(table)


def render_answer(payload: dict):
    console.print(Panel(Markdown(payload["answer"]), title="Answer", border_style="green"))
    if payload["sources"]:
        console.print(f"[dim]Sources: {', '.join(payload['sources'])}[/dim]")
    else:
        console.print("[dim]Sources: none (no matching community content)[/dim]")


async def _ask(prompt: str, **kwargs) -> str:
    # Prompt.ask blocks; keep the event loop free for background refreshes.
    return await asyncio.to_thread(Prompt.ask, prompt, **kwargs)


async def handle_question(service: AnswerService, question: str, session_id: str):
    try:
        with console.status("[bold cyan]Thinking...[/bold cyan]", spinner="dots"):
            payload = await service.ask_question(question, session_id)
    except UpstreamTimeout as exc:
        console.print(f"[bold red]The model took too long ({exc.operation}). Try again.[/bold red]")
        return None
    except EngineError as exc:
        logger.warning("cli_question_failed", session_id=session_id, error_type=type(exc).__name__)
        console.print(f"[bold red]Could not answer: {exc}[/bold red]")
        return None
    render_answer(payload)
    return payload


async def handle_summary(service: AnswerService, item_id: str):
    item = service.store.get(item_id)
    if item is None or item.deleted:
        console.print(f"[bold red]No content with id '{item_id}'.[/bold red]")
        return None
    summary = await service.query_summary(item_id)
    if summary is None:
        console.print("[yellow]No summary (content is short or the summarizer is unavailable).[/yellow]")
        console.print(item.text)
        return None
    console.print(Panel(summary, title=f"Summary v{item.version}", border_style="cyan"))
    return summary


async def _run_menu(service: AnswerService):
    session_id = f"cli_{uuid.uuid4().hex[:12]}"
    console.print(f"[green]Conversation session: {session_id}[/green]")
    while True:
        choice = await _ask("Choose an action", choices=MENU_CHOICES, default="ask")
        if choice == "quit":
            break
        try:
            await _dispatch(service, choice, session_id)
        except ValueError as exc:
            console.print(f"[bold red]{exc}[/bold red]")


async def _dispatch(service: AnswerService, choice: str, session_id: str):
    if choice == "list":
        render_content_table(service)
    elif choice == "post":
        title = await _ask("Title")
        text = await _ask("Content")
        category = await _ask("Category", default="")
        item = service.create_post(text, title=title, category=category)
        console.print(f"[green]OK Post created ({item.id}).[/green]")
    elif choice == "help":
        title = await _ask("Title")
        text = await _ask("Description")
        location = await _ask("Location", default="")
        item = service.create_help_request(text, title=title, location=location)
        console.print(f"[green]OK Help request created ({item.id}).[/green]")
    elif choice == "edit":
        item_id = await _ask("Content id")
        text = await _ask("New content")
        if service.edit_content(item_id, text=text) is None:
            console.print("[bold red]Content not found.[/bold red]")
    elif choice == "delete":
        item_id = await _ask("Content id")
        if not service.delete_content(item_id):
            console.print("[bold red]Content not found.[/bold red]")
    elif choice == "volunteer":
        item_id = await _ask("Help request id")
        volunteer_id = await _ask("Volunteer name")
        if service.volunteer(item_id, volunteer_id) is None:
            console.print("[bold red]Help request not found.[/bold red]")
    elif choice == "summary":
        await handle_summary(service, await _ask("Content id"))
    elif choice == "ask":
        question = await _ask("[bold cyan]Ask a question[/bold cyan]")
        if question.strip():
            await handle_question(service, question, session_id)


async def run_cli():
    service = AnswerService.from_config()
    try:
        await service.start()
        await _run_menu(service)
    finally:
        await service.close()


def main():
    """Main application loop."""
    display_welcome_banner()
    try:
        asyncio.run(run_cli())
    except KeyboardInterrupt:
        pass
    console.print("\n[bold magenta]Goodbye![/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()
