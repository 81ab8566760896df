import json, asyncio, logging
import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .application.wiring import build_runtime
from .config import Settings
from .domain.decoding import decode_address_from_topic, decode_payload
from .domain.errors import DecodeError

console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # keep http client chatter out of INFO output
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _render(payload: dict, top: int) -> None:
    if not payload.get("ok"):
        console.print(Panel(f"[red]{payload.get('error')}[/]\n\n{payload.get('hint', '')}", title="update failed"))
        return
    meta = payload.get("meta", {})
    for key, title, done in (("weekly", "this week", meta.get("completeCurWeek")),
                             ("lastWeek", "last week", meta.get("completePrevWeek"))):
        table = Table(title=f"{title} ({'complete' if done else 'catching up'})", expand=False)
        table.add_column("#", justify="right")
        table.add_column("address")
        table.add_column("name")
        table.add_column("points", justify="right")
        for row in payload.get(key, [])[:top]:
            table.add_row(str(row["rank"]), row["address"], row.get("name") or "", row["points"])
        console.print(table)
    console.print(
        f"[bold]summary[/]: latest={meta.get('latestBlock')}  "
        f"[green]users[/]={meta.get('weeklyUsers')}/{meta.get('lastWeekUsers')}  "
        f"store={meta.get('store')}  busy={meta.get('busy', False)}"
    )


async def _read(refresh: bool, names: bool) -> dict:
    rt = build_runtime(Settings.from_env())
    try:
        return await rt.service.read(refresh=refresh, include_names=names)
    finally:
        await rt.aclose()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose):
    """weekboard: two-week onchain points leaderboard."""
    _setup_logging(verbose)


@cli.command("refresh")
@click.option("--names/--no-names", default=False, show_default=True, help="Resolve Farcaster names")
@click.option("--top", type=int, default=20, show_default=True, help="Rows to print per week")
@click.option("--json", "as_json", is_flag=True, help="Print the raw payload")
def refresh_cmd(names, top, as_json):
    """Force an incremental update and print the result."""
    payload = asyncio.run(_read(True, names))
    if as_json:
        console.print_json(json.dumps(payload))
    else:
        _render(payload, top)
    if not payload.get("ok"):
        raise SystemExit(1)


@cli.command("show")
@click.option("--names/--no-names", default=False, show_default=True)
@click.option("--top", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True)
def show_cmd(names, top, as_json):
    """Print the leaderboard (cached response when available)."""
    payload = asyncio.run(_read(False, names))
    if as_json:
        console.print_json(json.dumps(payload))
    else:
        _render(payload, top)


@cli.command("decode")
@click.argument("data")
@click.option("--topic", "user_topic", default="", help="Indexed user topic (topics[1])")
def decode_cmd(data, user_topic):
    """Decode one ActionLogged `data` blob into points and week."""
    dec = decode_payload(data)
    if dec is None:
        raise click.ClickException("undecodable payload")
    console.print(f"points={dec.points}  weekMs={dec.week_ms}")
    if user_topic:
        try:
            console.print(f"user={decode_address_from_topic(user_topic)}")
        except DecodeError as e:
            raise click.ClickException(str(e))


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve_cmd(host, port):
    """Serve /api/leaderboard over HTTP."""
    import uvicorn
    from .presentation.http import create_app

    uvicorn.run(create_app(), host=host, port=port, log_config=None)


if __name__ == "__main__":
    cli()
