"""Command line interface for FolderSearch."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from foldersearch.config import AppConfig
from foldersearch.embedding.encoder import EmbeddingConfig, LazyEmbeddingModel
from foldersearch.embedding.reranker import DEFAULT_RERANKER
from foldersearch.errors import FolderSearchError
from foldersearch.index.containers import ContainerManager

console = Console()
app = typer.Typer(help="FolderSearch - local semantic search over your folders")

DataDirOption = typer.Option(None, "--data-dir", help="Directory holding the registry and indexes")
ContainerOption = typer.Option(None, "--container", "-c", help="Container (defaults to the active one)")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _build_manager(
    data_dir: Optional[Path], model: Optional[str] = None, reranker_model: Optional[str] = None
) -> ContainerManager:
    defaults = AppConfig()
    config = AppConfig(
        data_dir=data_dir if data_dir is not None else defaults.data_dir,
        model_name=model or defaults.model_name,
        reranker_model=reranker_model,
    )
    embedder = LazyEmbeddingModel(EmbeddingConfig(model_name=config.model_name))
    return ContainerManager(config, embedder, base_dir=Path.cwd())


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except (FolderSearchError, NotADirectoryError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("containers")
def list_containers(data_dir: Path = DataDirOption) -> None:
    """List containers and their indexed folders."""
    manager = _build_manager(data_dir)
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Container")
    table.add_column("Description")
    table.add_column("Folders")
    for container in manager.list_containers():
        name = f"[bold]{container['name']}[/bold] *" if container["active"] else container["name"]
        table.add_row(name, container["description"], "\n".join(container["indexed_paths"]))
    console.print(table)
    manager.close()


@app.command()
def create(
    name: str = typer.Argument(..., help="Container name"),
    description: str = typer.Option("", "--description", "-d", help="Free-form description"),
    data_dir: Path = DataDirOption,
) -> None:
    """Create a new container."""
    manager = _build_manager(data_dir)
    with _handle_errors():
        manager.create(name, description)
    console.print(f"Created container [bold]{name}[/bold].")
    manager.close()


@app.command()
def delete(
    name: str = typer.Argument(..., help="Container name"),
    data_dir: Path = DataDirOption,
) -> None:
    """Delete a container together with its index."""
    manager = _build_manager(data_dir)
    with _handle_errors():
        manager.delete(name)
    console.print(f"Deleted container [bold]{name}[/bold].")
    manager.close()


@app.command()
def use(
    name: str = typer.Argument(..., help="Container name"),
    data_dir: Path = DataDirOption,
) -> None:
    """Make a container the active one."""
    manager = _build_manager(data_dir)
    with _handle_errors():
        manager.set_active(name)
    console.print(f"Active container: [bold]{name}[/bold]")
    manager.close()


@app.command("add-folder")
def add_folder(
    folder: Path = typer.Argument(..., help="Folder to index", resolve_path=True),
    container: Optional[str] = ContainerOption,
    data_dir: Path = DataDirOption,
) -> None:
    """Register a folder with a container (indexing happens with `index`)."""
    manager = _build_manager(data_dir)
    name = container or manager.active_container
    with _handle_errors():
        resolved = manager.add_path(name, folder)
    console.print(f"Added {resolved} to [bold]{name}[/bold].")
    manager.close()


@app.command("remove-folder")
def remove_folder(
    folder: Path = typer.Argument(..., help="Folder to stop indexing", resolve_path=True),
    container: Optional[str] = ContainerOption,
    data_dir: Path = DataDirOption,
) -> None:
    """Unregister a folder; its documents are dropped on the next `index`."""
    manager = _build_manager(data_dir)
    name = container or manager.active_container
    with _handle_errors():
        removed = manager.remove_path(name, folder)
    if removed:
        console.print(f"Removed {folder} from [bold]{name}[/bold].")
    else:
        console.print(f"[yellow]{folder} is not indexed by {name}.[/yellow]")
    manager.close()


@app.command()
def index(
    folders: Optional[List[Path]] = typer.Argument(
        None, help="Folders to add before indexing.", resolve_path=True
    ),
    container: Optional[str] = ContainerOption,
    rebuild: bool = typer.Option(False, "--rebuild", help="Re-extract and re-embed every file"),
    data_dir: Path = DataDirOption,
    model: Optional[str] = typer.Option(None, help="Sentence-transformer model name"),
    verbose: bool = VerboseOption,
) -> None:
    """Bring a container's index up to date with its folders."""
    _setup_logging(verbose)
    manager = _build_manager(data_dir, model)
    name = container or manager.active_container
    with _handle_errors():
        for folder in folders or []:
            manager.add_path(name, folder)
        if not manager.indexed_paths(name):
            console.print(f"[yellow]No folders registered for {name}.[/yellow]")
            manager.close()
            return

        console.print(f"Indexing container [bold]{name}[/bold]...")
        stats = manager.index(name, rebuild=rebuild)

    console.print(
        f"Inserted: {stats.inserted}, updated: {stats.updated}, deleted: {stats.deleted}, "
        f"unchanged: {stats.unchanged}, skipped: {stats.skipped}, "
        f"failed: {stats.failed}, pending: {stats.pending}"
    )
    manager.close()


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    container: Optional[str] = ContainerOption,
    top_k: int = typer.Option(10, help="Number of results to display"),
    multi_chunk: bool = typer.Option(False, "--multi-chunk", help="Show every matching chunk"),
    prefix: Optional[Path] = typer.Option(None, "--prefix", help="Only search below this path"),
    hybrid: bool = typer.Option(False, "--hybrid", help="Fuse vector and keyword rankings"),
    rerank: bool = typer.Option(False, "--rerank", help="Reorder candidates with a cross-encoder"),
    reranker_model: str = typer.Option(DEFAULT_RERANKER, help="Cross-encoder used by --rerank"),
    data_dir: Path = DataDirOption,
    model: Optional[str] = typer.Option(None, help="Sentence-transformer model name"),
    verbose: bool = VerboseOption,
) -> None:
    """Execute a semantic search in one container."""
    _setup_logging(verbose)
    manager = _build_manager(data_dir, model, reranker_model if rerank else None)
    name = container or manager.active_container
    with _handle_errors():
        results = manager.search(
            name,
            query,
            top_k=top_k,
            multi_chunk=multi_chunk,
            path_prefix=prefix,
            hybrid=hybrid,
            rerank=rerank,
        )
    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        manager.close()
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Offset")
    table.add_column("Snippet")

    for result in results:
        snippet = result.text.replace("\n", " ")
        table.add_row(f"{result.score:.4f}", str(result.path), str(result.start), snippet[:180])
        for extra in result.extra_chunks:
            table.add_row(
                f"  {extra.score:.4f}", "", str(extra.start), extra.text.replace("\n", " ")[:180]
            )

    console.print(table)
    manager.close()


@app.command()
def status(
    container: Optional[str] = ContainerOption,
    data_dir: Path = DataDirOption,
) -> None:
    """Show document counts for a container."""
    manager = _build_manager(data_dir)
    name = container or manager.active_container
    with _handle_errors():
        stats = manager.store(name).get_stats()
        info = manager.get(name)
    console.print(f"[bold]{name}[/bold] {info.description}")
    for indexed in info.indexed_paths:
        scanned = (
            time.strftime("%Y-%m-%d %H:%M", time.localtime(indexed.last_scan_at))
            if indexed.last_scan_at
            else "never"
        )
        console.print(f"  {indexed.path} (last scan: {scanned})")
    console.print(
        f"Documents: {stats['document_count']}, chunks: {stats['chunk_count']}, "
        f"pending: {stats['pending_count']}, failed: {stats['failed_count']}"
    )
    manager.close()


@app.command()
def watch(
    data_dir: Path = DataDirOption,
    model: Optional[str] = typer.Option(None, help="Sentence-transformer model name"),
    verbose: bool = VerboseOption,
) -> None:
    """Watch every registered folder and index changes as they happen."""
    from foldersearch.watch import FolderWatcher

    _setup_logging(verbose)
    manager = _build_manager(data_dir, model)
    watcher = FolderWatcher(manager)
    watcher.start()
    console.print("Watching registered folders. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(5)
            watcher.refresh()
    except KeyboardInterrupt:
        console.print("Stopping...")
    finally:
        watcher.stop()
        manager.close()


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    data_dir: Path = DataDirOption,
    reranker_model: Optional[str] = typer.Option(
        None, help="Cross-encoder for searches that ask for reranking"
    ),
) -> None:
    """Start the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from foldersearch.web.app import create_app

    manager = _build_manager(data_dir, reranker_model=reranker_model)
    console.print(f"Starting API on http://{host}:{port} (data: {manager.data_dir})")
    uvicorn.run(create_app(manager), host=host, port=port, reload=False, log_level="info")
