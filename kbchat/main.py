"""
kbchat - CLI Entry Point
-------------------------
Typer commands over the same services the HTTP API uses.

Usage:
    python -m kbchat.main kb create "Support docs" faq.txt guide.pdf --user u1
    python -m kbchat.main kb list --user u1
    python -m kbchat.main ingest guide.pdf --user u1 --kb <kb-id>
    python -m kbchat.main documents --user u1
    python -m kbchat.main reprocess <document-id>
    python -m kbchat.main search "reset password" --user u1
    python -m kbchat.main chat --chatbot <chatbot-id>          # /reset, /exit
    python -m kbchat.main chatbots create "Helpdesk" --user u1 --template customer-support
    python -m kbchat.main domains add <chatbot-id> https://www.example.com
    python -m kbchat.main validate-domain <chatbot-id> example.com cbt_...
    python -m kbchat.main embed-snippet <chatbot-id> --origin https://app.example.com
    python -m kbchat.main analytics --user u1
    python -m kbchat.main transcribe voice.webm
    python -m kbchat.main speak "Hello there" --out hello.mp3
    python -m kbchat.main serve --port 8000
"""
from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from kbchat.config import load_settings
from kbchat.conversation.handler import ConversationView
from kbchat.embed.snippet import render_embed_snippet
from kbchat.errors import AccessDeniedError, KBChatError
from kbchat.serving.services import Services, build_services
from kbchat.utils.helpers import truncate_text
from kbchat.utils.logger import mask_secret, setup_logger
from kbchat.voice.recorder import RecordingSession
from kbchat.workspace.knowledge_bases import UploadFile as KnowledgeBaseUpload

app = typer.Typer(
    name="kbchat",
    help="Knowledge-base chatbots: ingestion, retrieval-augmented chat, voice and embed security",
    add_completion=False,
)
chatbots_app = typer.Typer(help="Create and inspect chatbots", add_completion=False)
domains_app = typer.Typer(help="Manage the domains allowed to embed a chatbot", add_completion=False)
kb_app = typer.Typer(help="Create and manage knowledge bases", add_completion=False)
app.add_typer(chatbots_app, name="chatbots")
app.add_typer(domains_app, name="domains")
app.add_typer(kb_app, name="kb")

console = Console()

CONFIG_OPTION = typer.Option("config/config.yaml", "--config", "-c", help="Path to config YAML")
USER_OPTION = typer.Option("local-user", "--user", "-u", envvar="KBCHAT_USER_ID", help="Owner id")

_STATUS_STYLE = {"processed": "green", "processing": "yellow", "failed": "red", "pending": "dim"}


# --- Helpers ------------------------------------------------------------------

def _services(config: str) -> Services:
    settings = load_settings(config)
    setup_logger(settings.logging.level, settings.logging.file, serialize=settings.logging.json_lines)
    return build_services(settings)


def _media_type(path: Path) -> str:
    if path.suffix.lower() == ".txt":
        return "text/plain"
    if path.suffix.lower() == ".pdf":
        return "application/pdf"
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _fail(exc: Exception) -> None:
    console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
    raise typer.Exit(1)


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    )


# --- Documents ----------------------------------------------------------------

@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="A .txt or .pdf file"),
    user: str = USER_OPTION,
    kb: Optional[str] = typer.Option(None, "--kb", help="Knowledge base id to attach the document to"),
    config: str = CONFIG_OPTION,
) -> None:
    """
    Upload a file, then extract, chunk, embed and store it.

    \b
    Steps:
      1. Upload to the documents bucket
      2. Create the document row (processing)
      3. Extract text -> chunk -> embed each chunk -> store
      4. Mark processed (or failed)
    """
    services = _services(config)
    data = path.read_bytes()
    media_type = _media_type(path)

    try:
        document = services.ingestion.start(user, path.name, data, media_type, knowledge_base_id=kb)
        console.print(f"[cyan]Document {document.id} created (processing)[/cyan]")
        with _progress() as progress:
            task = progress.add_task(f"[cyan]Embedding {path.name}...[/cyan]", total=None)

            def on_progress(done: int, total: int) -> None:
                progress.update(task, completed=done, total=total)

            document = services.ingestion.process(document, data, on_progress=on_progress)
    except KBChatError as exc:
        _fail(exc)

    chunks = services.ingestion.count_chunks(document.id)
    console.print(f"[green][OK] {path.name} processed into {chunks} chunks[/green]")


@app.command()
def reprocess(
    document_id: str = typer.Argument(..., help="Document to rebuild from its stored file"),
    config: str = CONFIG_OPTION,
) -> None:
    """Delete a document's chunks and rebuild them from the stored file."""
    services = _services(config)
    try:
        with console.status("[cyan]Reprocessing...[/cyan]"):
            document = services.ingestion.reprocess(document_id)
    except KBChatError as exc:
        _fail(exc)
    console.print(
        f"[green][OK] {document.filename} reprocessed "
        f"({services.ingestion.count_chunks(document.id)} chunks)[/green]"
    )


@app.command()
def documents(
    user: str = USER_OPTION,
    kb: Optional[str] = typer.Option(None, "--kb", help="Only this knowledge base"),
    config: str = CONFIG_OPTION,
) -> None:
    """List an owner's documents, newest first."""
    services = _services(config)
    docs = services.ingestion.list_documents(user, knowledge_base_id=kb)
    if not docs:
        console.print("[yellow]No documents.[/yellow]")
        return

    table = Table("ID", "Filename", "Type", "Size", "Status", "Processed", box=box.SIMPLE, header_style="bold dim")
    for doc in docs:
        style = _STATUS_STYLE.get(doc.status.value, "white")
        table.add_row(
            doc.id,
            doc.filename,
            doc.file_type,
            f"{doc.file_size:,}",
            f"[{style}]{doc.status.value}[/{style}]",
            doc.processed_at.strftime("%Y-%m-%d %H:%M") if doc.processed_at else "-",
        )
    console.print(table)


# --- Retrieval / chat ---------------------------------------------------------

@app.command()
def search(
    query: str = typer.Argument(..., help="Question to retrieve context for"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Owner scope"),
    chatbot: Optional[str] = typer.Option(None, "--chatbot", help="Chatbot scope (public)"),
    top_k: int = typer.Option(5, "--top-k", help="Chunks to return"),
    config: str = CONFIG_OPTION,
) -> None:
    """Preview which chunks a question would retrieve."""
    if not user and not chatbot:
        console.print("[red]Pass --user or --chatbot to choose a scope[/red]")
        raise typer.Exit(1)

    services = _services(config)
    chunks = services.retriever.retrieve(query, top_k, user_id=user, chatbot_id=chatbot)
    if not chunks:
        console.print("[yellow]No matching chunks.[/yellow]")
        return

    table = Table("No.", "Document", "Chunk", "Score", "Text", box=box.SIMPLE, header_style="bold dim")
    for i, chunk in enumerate(chunks, start=1):
        table.add_row(
            str(i),
            chunk.document_id[:8],
            str(chunk.chunk_index),
            f"{chunk.similarity:.3f}" if chunk.similarity is not None else "-",
            truncate_text(chunk.chunk_text, 90),
        )
    console.print(table)


@app.command()
def chat(
    chatbot: Optional[str] = typer.Option(None, "--chatbot", help="Chatbot id (omit for a scratch bot)"),
    user: str = USER_OPTION,
    config: str = CONFIG_OPTION,
) -> None:
    """
    Interactive conversation with a chatbot.

    \b
    Commands inside the loop:
      /reset   start a new conversation (new session id)
      /exit    quit
    """
    services = _services(config)
    try:
        bot = (
            services.chatbots.get(chatbot)
            if chatbot
            else services.chatbots.create(user, "Scratch bot", template="general-purpose")
        )
    except KBChatError as exc:
        _fail(exc)

    view = ConversationView(services.turns, chatbot=bot)
    console.print()
    console.print(
        Panel(
            f"[bold cyan]{bot.name}[/bold cyan]\n"
            f"[white]knowledge base: {bot.knowledge_base_id or 'none'} | "
            f"llm: {'on' if services.generator.configured else 'demo mode'}[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )
    for message in view.state.messages:
        console.print(f"[bold green]{bot.name}[/bold green] > {message.text}")
    console.print("[dim]Type /reset for a new chat, /exit to quit.[/dim]\n")

    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not raw:
            continue
        if raw.lower() in {"/exit", "exit", "quit"}:
            console.print("[dim]Goodbye.[/dim]")
            break
        if raw.lower() == "/reset":
            state = view.reset()
            console.print("[dim]New conversation started.[/dim]")
            for message in state.messages:
                console.print(f"[bold green]{bot.name}[/bold green] > {message.text}")
            continue

        with console.status("[cyan]Thinking...[/cyan]"):
            result = view.send(raw)

        for message in result.new_messages[1:]:
            style = "yellow" if message.synthetic else "green"
            console.print(f"[bold {style}]{bot.name}[/bold {style}] >")
            console.print(Markdown(message.text))
            if message.sources:
                console.print(f"[dim]Sources: {', '.join(message.sources)}[/dim]")
        console.print(
            f"[dim]session={view.state.session_id[:8]}  escalated={view.state.escalated}[/dim]\n"
        )


# --- Knowledge bases ----------------------------------------------------------

@kb_app.command("create")
def kb_create(
    name: str = typer.Argument(...),
    files: Optional[list[Path]] = typer.Argument(None, exists=True, dir_okay=False, help="Files to ingest into it"),
    user: str = USER_OPTION,
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    config: str = CONFIG_OPTION,
) -> None:
    """Create a knowledge base, optionally ingesting its first files. Ctrl+C cancels the rest."""
    services = _services(config)
    manager = services.knowledge_bases
    try:
        kb = manager.create(user, name, description)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] Knowledge base {kb.name} created:[/green] {kb.id}")
    if not files:
        return

    uploads = [KnowledgeBaseUpload(p.name, p.read_bytes(), _media_type(p)) for p in files]
    try:
        with console.status(f"[cyan]Ingesting {len(uploads)} file(s)...[/cyan]"):
            result = manager.add_documents(kb, uploads)
    except KeyboardInterrupt:
        manager.cancel_uploads(kb.id)
        console.print("[yellow]Cancelled; files already ingested are kept[/yellow]")
        raise typer.Exit(130)

    for doc in result.documents:
        console.print(f"  [green]+[/green] {doc.filename} ({doc.id})")
    for filename, error in result.errors.items():
        console.print(f"  [red]x[/red] {filename}: {error}")


@kb_app.command("list")
def kb_list(user: str = USER_OPTION, config: str = CONFIG_OPTION) -> None:
    """List an owner's knowledge bases."""
    services = _services(config)
    table = Table("ID", "Name", "Description", "Created", box=box.SIMPLE, header_style="bold dim")
    for kb in services.knowledge_bases.list(user):
        table.add_row(kb.id, kb.name, kb.description or "-", kb.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@kb_app.command("rename")
def kb_rename(
    knowledge_base_id: str = typer.Argument(...),
    name: str = typer.Argument(...),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    config: str = CONFIG_OPTION,
) -> None:
    """Rename a knowledge base."""
    services = _services(config)
    try:
        kb = services.knowledge_bases.rename(knowledge_base_id, name, description)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] Renamed to {kb.name}[/green]")


@kb_app.command("delete")
def kb_delete(
    knowledge_base_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config: str = CONFIG_OPTION,
) -> None:
    """Delete a knowledge base; its documents and chatbots are detached, not deleted."""
    if not yes:
        typer.confirm(f"Delete knowledge base {knowledge_base_id}?", abort=True)
    services = _services(config)
    try:
        services.knowledge_bases.delete(knowledge_base_id)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] Deleted {knowledge_base_id}[/green]")


# --- Chatbots -----------------------------------------------------------------

@chatbots_app.command("create")
def chatbots_create(
    name: str = typer.Argument(...),
    user: str = USER_OPTION,
    template: Optional[str] = typer.Option(None, "--template", help="customer-support | sales-assistant | general-purpose | education | healthcare"),
    kb: Optional[str] = typer.Option(None, "--kb", help="Knowledge base id"),
    config: str = CONFIG_OPTION,
) -> None:
    """Create a chatbot."""
    services = _services(config)
    try:
        bot = services.chatbots.create(user, name, template=template, knowledge_base_id=kb)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] Chatbot {bot.name} created:[/green] {bot.id}")


@chatbots_app.command("list")
def chatbots_list(user: str = USER_OPTION, config: str = CONFIG_OPTION) -> None:
    """List an owner's chatbots."""
    services = _services(config)
    table = Table("ID", "Name", "Status", "Knowledge base", "Template", box=box.SIMPLE, header_style="bold dim")
    for bot in services.chatbots.list(user):
        table.add_row(
            bot.id, bot.name, bot.status.value,
            bot.knowledge_base_id or "-", bot.configuration.template or "-",
        )
    console.print(table)


# --- Domains ------------------------------------------------------------------

@domains_app.command("add")
def domains_add(
    chatbot_id: str = typer.Argument(...),
    domain: str = typer.Argument(..., help="e.g. https://www.example.com"),
    config: str = CONFIG_OPTION,
) -> None:
    """Allow a domain to embed the chatbot and print its token."""
    services = _services(config)
    try:
        row = services.domains.add(chatbot_id, domain)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] {row.domain}[/green] token: [bold]{row.token}[/bold]")


@domains_app.command("list")
def domains_list(chatbot_id: str = typer.Argument(...), config: str = CONFIG_OPTION) -> None:
    """Show a chatbot's allowed domains, newest first."""
    services = _services(config)
    table = Table("ID", "Domain", "Token", "Active", box=box.SIMPLE, header_style="bold dim")
    for row in services.domains.list(chatbot_id):
        table.add_row(row.id, row.domain, mask_secret(row.token), "yes" if row.is_active else "no")
    console.print(table)


@domains_app.command("regenerate")
def domains_regenerate(domain_id: str = typer.Argument(...), config: str = CONFIG_OPTION) -> None:
    """Issue a new token; the old one stops working immediately."""
    services = _services(config)
    try:
        row = services.domains.regenerate_token(domain_id)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] {row.domain}[/green] new token: [bold]{row.token}[/bold]")


@domains_app.command("disable")
def domains_disable(
    domain_id: str = typer.Argument(...),
    enable: bool = typer.Option(False, "--enable", help="Re-enable instead"),
    config: str = CONFIG_OPTION,
) -> None:
    """Disable (or re-enable) a domain without deleting it."""
    services = _services(config)
    try:
        row = services.domains.set_active(domain_id, enable)
    except KBChatError as exc:
        _fail(exc)
    console.print(f"[green][OK] {row.domain} {'enabled' if row.is_active else 'disabled'}[/green]")


@app.command("validate-domain")
def validate_domain(
    chatbot_id: str = typer.Argument(...),
    domain: str = typer.Argument(...),
    token: Optional[str] = typer.Argument(None),
    config: str = CONFIG_OPTION,
) -> None:
    """Run the embed security gate for a domain/token pair."""
    services = _services(config)
    try:
        decision = services.gate.authorize(chatbot_id, token=token, domain=domain)
    except AccessDeniedError as exc:
        console.print(f"[red]Denied:[/red] {exc}")
        raise typer.Exit(1)
    label = decision.domain or domain
    console.print(
        f"[green]Allowed[/green] {label}"
        + ("" if decision.token_checked else " [dim](no token: open embed)[/dim]")
    )


@app.command("embed-snippet")
def embed_snippet(
    chatbot_id: str = typer.Argument(...),
    origin: str = typer.Option("http://localhost:8000", "--origin", help="Where /embed/chatbot.js is served"),
    domain: Optional[str] = typer.Option(None, "--domain", help="Registered domain to bind the snippet to"),
    config: str = CONFIG_OPTION,
) -> None:
    """Print the <script> loader for a chatbot."""
    services = _services(config)
    token = None
    if domain:
        row = services.domains.get(chatbot_id, domain)
        if row is None:
            console.print(f"[red]{domain} is not registered for this chatbot[/red]")
            raise typer.Exit(1)
        token, domain = row.token, row.domain
    try:
        console.print(render_embed_snippet(origin, chatbot_id, token=token, domain=domain), markup=False)
    except KBChatError as exc:
        _fail(exc)


# --- Analytics ----------------------------------------------------------------

@app.command()
def analytics(user: str = USER_OPTION, config: str = CONFIG_OPTION) -> None:
    """Conversation totals and top questions across an owner's chatbots."""
    services = _services(config)
    summary = services.analytics.summarize(user)

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_row("Conversations", str(summary.total_conversations))
    table.add_row("Messages", str(summary.total_messages))
    table.add_row("Unique users", str(summary.unique_users))
    table.add_row("Conversations today", str(summary.conversations_today))
    table.add_row("Messages today", str(summary.messages_today))
    console.print(table)

    if summary.top_questions:
        console.print("[bold]Top questions[/bold]")
        for item in summary.top_questions:
            console.print(f"  {item.count:4d}  {item.question}")


# --- Voice --------------------------------------------------------------------

@app.command()
def transcribe(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Recorded audio"),
    config: str = CONFIG_OPTION,
) -> None:
    """Transcribe an audio file to text."""
    services = _services(config)
    session = RecordingSession(media_type=mimetypes.guess_type(path.name)[0] or "audio/webm")
    session.add_chunk(path.read_bytes())
    try:
        text = services.transcriber.transcribe(session.finish())
    except KBChatError as exc:
        _fail(exc)
    console.print(text)


@app.command()
def speak(
    text: str = typer.Argument(...),
    out: Path = typer.Option(Path("speech.mp3"), "--out", "-o", help="Where to write the audio"),
    config: str = CONFIG_OPTION,
) -> None:
    """Synthesize speech for a line of text."""
    services = _services(config)
    try:
        audio = services.synthesizer.synthesize(text)
    except KBChatError as exc:
        _fail(exc)
    out.write_bytes(audio)
    logger.info(f"[CLI] Wrote {len(audio)} bytes -> {out}")
    console.print(f"[green][OK] {out} ({len(audio):,} bytes)[/green]")


# --- Server -------------------------------------------------------------------

@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Run the HTTP API (app.server) under uvicorn."""
    logger.info(f"[CLI] Serving on http://{host}:{port}")
    uvicorn.run("app.server:app", host=host, port=port, reload=reload)


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
