"""CLI entry point for notebook-chat."""

import logging
import os

import click
import uvicorn


@click.group()
def main():
    """Serve notebook chat transcripts over HTTP."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--log-level",
    default=lambda: os.environ.get("NOTEBOOK_CHAT_LOG_LEVEL", "INFO"),
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity.",
)
def serve(port: int, host: str, log_level: str):
    """Start the chat API server."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Starting notebook-chat on http://{host}:{port}")
    uvicorn.run("notebook_chat.server:app", host=host, port=port, reload=False, log_level=log_level.lower())
