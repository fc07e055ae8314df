import asyncio
import json
from logging import Logger
from typing import Any, Literal

import click
import yaml
from fastmcp import FastMCP
from fastmcp.server.middleware.logging import LoggingMiddleware
from fastmcp.utilities.logging import get_logger

from lunar_commit_stats.models.stats import CommitStats
from lunar_commit_stats.pipeline.orchestrator import AnalysisMode
from lunar_commit_stats.pipeline.progress import ProgressSnapshot
from lunar_commit_stats.servers.analysis import AnalysisServer
from lunar_commit_stats.servers.shared.errors import ServerError

logger: Logger = get_logger(name=__name__)

mcp: FastMCP[None] = FastMCP[None](name="Lunar Commit Stats")

mcp.add_middleware(middleware=LoggingMiddleware(include_payloads=True, logger=logger))

analysis_server: AnalysisServer = AnalysisServer(logger=logger)
_ = analysis_server.register_tools(fastmcp=mcp)


async def write_progress_frame(snapshot: ProgressSnapshot) -> None:
    click.echo(snapshot.to_frame(), err=True, nl=False)


async def analyze_once(server: AnalysisServer, mode: AnalysisMode) -> CommitStats:
    try:
        username: str = await server.get_username()

        return await server.run_analysis(username=username, mode=mode, reporter=write_progress_frame)
    finally:
        await server.aclose()


def render_stats(stats: CommitStats, output: Literal["json", "yaml"]) -> str:
    stats_dict: dict[str, Any] = stats.to_json_dict()

    if output == "yaml":
        return yaml.safe_dump(stats_dict, sort_keys=False, allow_unicode=True)

    return json.dumps(stats_dict, indent=2, ensure_ascii=False)


@click.group()
def cli():
    """Find out which moon phases and times of day you commit in."""


@cli.command()
@click.option(
    "--mcp-transport",
    type=click.Choice(["stdio", "streamable-http"]),
    default="stdio",
    help="The transport to run the MCP server on",
)
def serve(mcp_transport: Literal["stdio", "streamable-http"]):
    mcp.run(transport=mcp_transport)


@cli.command()
@click.option("--detailed", is_flag=True, default=False, help="Also fetch the size of every commit within the lookback window")
@click.option(
    "--output",
    type=click.Choice(["json", "yaml"]),
    default="json",
    help="The format to print the stats in",
)
def analyze(detailed: bool, output: Literal["json", "yaml"]):
    """Analyze the commits of the user behind GITHUB_TOKEN, printing progress to stderr and the stats to stdout."""

    mode: AnalysisMode = AnalysisMode.DETAILED if detailed else AnalysisMode.BASIC

    try:
        stats: CommitStats = asyncio.run(analyze_once(server=analysis_server, mode=mode))
    except ServerError as e:
        raise click.ClickException(str(e)) from e

    click.echo(render_stats(stats=stats, output=output))


if __name__ == "__main__":
    cli()
