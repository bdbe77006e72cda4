import argparse
import sys
from typing import Sequence

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from ..compaction.orchestrator import CompactionOrchestrator
from ..compaction.learnings import extract_learnings
from ..compaction.suggestions import generate_suggested_questions
from ..errors import CompactError, ConfigurationError
from ..generation.facade import GenerationFacade
from ..generation.models import PROVIDER_PRIORITY
from ..models.conversation import ConversationInput
from ..overview.generator import OverviewGenerator, OverviewOptions, OverviewProgress
from ..overview.resources import discover_resources
from ..shared.logging import LogConfig, pipeline_context
from ..storage.credentials import EnvCredentialStore
from ..storage.store import CompactStore
from ..storage.turn_source import load_transcript
from ..utils.config import Config, set_config_value
from .parser import parse_arguments

console = Console()

_SECRET_FIELDS = {"GOOGLE_API_KEY", "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY"}


def _build_facade(config: Config, store: CompactStore) -> GenerationFacade:
    return GenerationFacade.from_config(config, EnvCredentialStore(config), usage_recorder=store)


def _load_conversation(args: argparse.Namespace) -> ConversationInput:
    conversation = load_transcript(args.file)
    return ConversationInput(
        workspace_id=getattr(args, "workspace", None) or conversation.workspace_id,
        conversation_id=getattr(args, "conversation", None) or conversation.conversation_id,
        title=getattr(args, "title", None) or conversation.title,
        turns=conversation.turns,
    )


def run_compact(config: Config, store: CompactStore, args: argparse.Namespace) -> int:
    conversation = _load_conversation(args)
    facade = _build_facade(config, store)
    orchestrator = CompactionOrchestrator(
        facade,
        store,
        config,
        map_concurrency=args.map_concurrency,
        chunk_target_tokens=args.chunk_tokens,
    )

    with Progress(
        TextColumn("[bold cyan]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("starting", total=100)

        def on_progress(session) -> None:
            step = session.current_step.value if session.current_step else session.status.value
            label = step
            if session.chunks_total:
                label = f"{step} ({session.chunks_processed}/{session.chunks_total})"
            progress.update(task_id, completed=session.progress, description=label)

        result, session = orchestrator.start_session(conversation, on_progress=on_progress)

    console.print(Markdown(result.content))
    console.print()
    console.print(
        f"[dim]session {session.id} | strategy {result.strategy_used} | chunks {result.chunk_count} | "
        f"{result.original_token_count} -> {result.compacted_token_count} tokens "
        f"(ratio {result.compression_ratio:.3f})[/dim]"
    )

    if args.suggest:
        questions = generate_suggested_questions(facade, result.content, conversation.conversation_id)
        if questions:
            console.print(Panel("\n".join(f"- {q.question}" for q in questions), title="Follow-up questions", border_style="grey39"))
    return 0


def run_overview(config: Config, store: CompactStore, args: argparse.Namespace) -> int:
    conversation = _load_conversation(args)
    generator = OverviewGenerator(_build_facade(config, store), store=store, config=config)
    options = OverviewOptions(
        generate_diagrams=False if args.no_diagrams else None,
        max_sections=args.max_sections,
        token_budget=args.token_budget,
        parallel_sections=args.parallel,
        discover_resources=args.resources,
    )

    with console.status("[bold cyan]ingestion") as status:
        def on_progress(p: OverviewProgress) -> None:
            status.update(f"[bold cyan]{p.phase}[/bold cyan] {p.progress}% [dim]{p.current_step}[/dim]")

        overview = generator.generate_overview(conversation, options, on_progress=on_progress)

    console.print(Panel(overview.summary or "", title=f"[bold]{overview.title}[/bold]", border_style="grey39"))
    for section in overview.sections:
        console.print(f"\n[bold magenta]{section.title}[/bold magenta] [dim]{section.type.value} / {section.importance.value}[/dim]")
        console.print(Markdown(section.content))
        for diagram in section.diagrams:
            console.print(Panel(diagram.mermaid_code, title="mermaid", border_style="dim"))
    if overview.resources:
        _print_resources(overview.resources)
    meta = overview.metadata
    console.print(
        f"\n[dim]{meta.get('processed_turns')}/{meta.get('total_turns')} turns | "
        f"model {meta.get('provider_used')}:{meta.get('model_used')} | {meta.get('generation_time_ms')}ms[/dim]"
    )
    return 0


def run_learnings(config: Config, store: CompactStore, args: argparse.Namespace) -> int:
    conversation = _load_conversation(args)
    with console.status("[bold cyan]extracting concepts"):
        concepts = extract_learnings(_build_facade(config, store), conversation, store=store)

    table = Table(title=f"Learnings: {conversation.title}")
    table.add_column("concept", style="bold")
    table.add_column("category")
    table.add_column("level")
    table.add_column("description")
    for concept in concepts:
        table.add_row(concept.name, concept.category, concept.difficulty, concept.description)
    console.print(table)
    return 0


def _print_resources(resources: list[dict]) -> None:
    table = Table(title="Learning resources")
    table.add_column("category")
    table.add_column("type")
    table.add_column("title", style="bold")
    table.add_column("url", style="dim")
    for resource in resources:
        table.add_row(resource["category"], resource["type"], resource["title"], resource["url"])
    console.print(table)


def run_resources(config: Config, store: CompactStore, args: argparse.Namespace) -> int:
    conversation = _load_conversation(args)
    existing: list[str] = []
    if args.more:
        record = store.get_resources(conversation.workspace_id, conversation.conversation_id)
        if record is not None:
            existing = [r["url"] for r in record.resources]
    with console.status("[bold cyan]finding resources"):
        discovery = discover_resources(_build_facade(config, store), conversation, existing_urls=existing, store=store)

    _print_resources([r.model_dump() for r in discovery.resources])
    if discovery.topics:
        console.print(f"[dim]topics: {', '.join(discovery.topics)}[/dim]")
    return 0


def show_session(store: CompactStore, session_id: str) -> int:
    session = store.get_session(session_id)
    if session is None:
        console.print(f"[yellow]No session {session_id}[/yellow]")
        return 1
    table = Table(show_header=False, box=None)
    table.add_row("status", session.status.value)
    table.add_row("step", session.current_step.value if session.current_step else "-")
    table.add_row("progress", f"{session.progress}%")
    table.add_row("chunks", f"{session.chunks_processed}/{session.chunks_total}")
    table.add_row("started", str(session.started_at))
    table.add_row("completed", str(session.completed_at or "-"))
    if session.error:
        table.add_row("error", f"[red]{session.error}[/red]")
    console.print(Panel(table, title=f"[bold]Session {session.id}[/bold]", border_style="grey39"))
    for entry in session.logs:
        console.print(f"[dim]{entry.get('timestamp')}[/dim] {entry.get('level', 'info'):<7} {entry.get('message')}")
    return 0


def show_result(store: CompactStore, workspace_id: str, conversation_id: str) -> int:
    result = store.get_result(workspace_id, conversation_id)
    if result is None:
        console.print(f"[yellow]No compaction stored for {workspace_id}/{conversation_id}[/yellow]")
        return 1
    console.print(Markdown(result.content))
    console.print(f"\n[dim]{result.strategy_used} | ratio {result.compression_ratio:.3f} | {result.run_metadata}[/dim]")
    return 0


def show_providers(config: Config) -> int:
    facade = GenerationFacade.from_config(config, EnvCredentialStore(config))
    available = facade.registry.available()
    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Credentials")
    table.add_column("compact")
    table.add_column("overview")
    for provider_id in PROVIDER_PRIORITY:
        table.add_row(
            provider_id,
            "[green]yes[/green]" if provider_id in available else "[dim]no[/dim]",
            facade.default_model(provider_id, "compact"),
            facade.default_model(provider_id, "overview"),
        )
    console.print(table)
    return 0 if available else 1


def show_usage(store: CompactStore) -> int:
    rows = store.usage_summary()
    table = Table(title="Usage")
    for column in ("Provider", "Model", "Requests", "Input", "Output", "Cost (USD)"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["provider"],
            row["model"],
            str(row["requests"]),
            str(row["input_tokens"]),
            str(row["output_tokens"]),
            f"{row['cost']:.4f}",
        )
    console.print(table)
    return 0


def show_config(config: Config) -> int:
    console.print("[bold magenta]Current Configuration Settings[/bold magenta]")
    console.print(f"[dim]Config file: {config.model_config.get('env_file', 'unknown')}[/dim]\n")
    for name in sorted(Config.model_fields):
        value = getattr(config, name)
        if name in _SECRET_FIELDS and value:
            value = "********"
        console.print(f"  {name} = {value}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    try:
        config_obj = Config()
    except Exception as e:
        console.print(f"[bold red]Error initializing configuration:[/bold red] {e}")
        return 1

    args = parse_arguments(config_obj, argv)
    config_obj.VERBOSE = args.verbose
    config_obj.DEBUG = args.debug
    LogConfig.configure(verbose=args.verbose, debug=args.debug)

    if args.command == "config-set":
        if set_config_value(args.key, args.value, config_obj):
            console.print(f"[green]Configuration '{args.key}' set to '{args.value}' in {config_obj.model_config.get('env_file', 'unknown')}.[/green]")
            return 0
        console.print(f"[bold red]Failed to set configuration '{args.key}'.[/bold red]")
        return 1
    if args.command == "config-list":
        return show_config(config_obj)
    if args.command == "providers":
        return show_providers(config_obj)

    if args.db_url:
        config_obj.DATABASE_URL = args.db_url
    store = CompactStore.from_config(config_obj)
    renderer = LogConfig.get_renderer(console, verbose=args.verbose, debug=args.debug)
    collector = LogConfig.new_collector()

    try:
        with pipeline_context(collector):
            if args.command == "compact":
                return run_compact(config_obj, store, args)
            if args.command == "overview":
                return run_overview(config_obj, store, args)
            if args.command == "learnings":
                return run_learnings(config_obj, store, args)
            if args.command == "resources":
                return run_resources(config_obj, store, args)
            if args.command == "session":
                return show_session(store, args.session_id)
            if args.command == "result":
                return show_result(store, args.workspace_id, args.conversation_id)
            if args.command == "usage":
                return show_usage(store)
    except ConfigurationError as e:
        renderer.render_error(str(e), e)
        console.print("[dim]Set one of LLM_COMPACT_GOOGLE_API_KEY, ANTHROPIC_API_KEY, OPENAI_API_KEY or OPENROUTER_API_KEY.[/dim]")
        return 2
    except (CompactError, FileNotFoundError, ValueError) as e:
        renderer.render_error(str(e), e)
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return 130
    finally:
        renderer.render_flow(collector)

    console.print(f"[bold red]Unknown command:[/bold red] {args.command}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
