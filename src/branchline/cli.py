"""CLI entry point for branchline."""

from pathlib import Path

import typer

APP_HELP = """
Inspect branching conversations stored by branchline.

\b
Conversations are stored as one JSON snapshot per conversation in:
  ~/.local/share/branchline/conversations/<conversation-id>.json
(override with --data-dir or BRANCHLINE_DATA_DIR)
"""

TRANSCRIPT_HELP = """
Output the conversation as currently displayed, as JSON.

Only the active version of each branch on the current path is included;
use the tree command to see every alternative.

\b
Examples:
  # Conversation overview
  branchline transcript <id> | jq '.metadata'

  # Roles and text of the displayed messages
  branchline transcript <id> | jq '[.messages[] | {role, text: .parts[0].text}]'

  # Compact output for piping
  branchline transcript <id> --compact
"""

app = typer.Typer(add_completion=False, help=APP_HELP)


def _load(conversation_id: str, data_dir: Path | None):
    from .config import get_settings
    from .errors import BranchlineError
    from .persistence import JsonDirectoryGateway, record_from_snapshot

    settings = get_settings()
    gateway = JsonDirectoryGateway(data_dir or settings.data_dir)
    try:
        snapshot = gateway.read(conversation_id)
    except BranchlineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    return record_from_snapshot(snapshot, settings)


@app.callback()
def main(verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging")) -> None:
    from .log import configure_logging

    configure_logging(verbose)


@app.command("list")
def list_conversations(
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Conversation directory"),
) -> None:
    """List stored conversations, most recently updated first."""
    from .config import get_settings
    from .errors import BranchlineError
    from .persistence import JsonDirectoryGateway

    gateway = JsonDirectoryGateway(data_dir or get_settings().data_dir)
    rows = []
    for conversation_id in gateway.list_ids():
        try:
            snapshot = gateway.read(conversation_id)
        except BranchlineError as e:
            typer.echo(f"Warning: skipping {conversation_id}: {e}", err=True)
            continue
        rows.append(snapshot)

    for snapshot in sorted(rows, key=lambda s: s.updated_at, reverse=True):
        typer.echo(f"{snapshot.id}  {snapshot.updated_at:%Y-%m-%d %H:%M}  {snapshot.title}")


@app.command(help=TRANSCRIPT_HELP)
def transcript(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Conversation directory"),
    output: Path | None = typer.Option(None, "-o", "--output", help="Output JSON file path"),
    compact: bool = typer.Option(False, "--compact", help="No indentation (for piping)"),
) -> None:
    from .transcript import render_json

    record = _load(conversation_id, data_dir)
    json_str = render_json(record, compact=compact)

    if output is None:
        typer.echo(json_str)
    else:
        output.write_text(json_str)
        typer.echo(f"Written to {output}", err=True)


@app.command()
def tree(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Conversation directory"),
    width: int = typer.Option(60, "--width", help="Preview width per version"),
) -> None:
    """Show every branch and version; * marks active versions, > the current path."""
    from .transcript import render_outline

    typer.echo(render_outline(_load(conversation_id, data_dir), width=width))


@app.command("index-text")
def index_text(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Conversation directory"),
) -> None:
    """Print the plain text of the current path, as fed to a search index."""
    from .tree import path_text

    typer.echo(path_text(_load(conversation_id, data_dir).tree))


if __name__ == "__main__":
    app()
