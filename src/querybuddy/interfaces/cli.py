"""CLI interface for querybuddy using Click."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from querybuddy.core.agent import (
    Agent,
    Content,
    Failed,
    Finished,
    ToolCallStarted,
    ToolResult,
)
from querybuddy.core.config import Settings, get_project_root, load_settings
from querybuddy.core.logging import setup_logging
from querybuddy.db.sqlite import SQLiteDataAccess
from querybuddy.llm.errors import ProviderError
from querybuddy.llm.factory import create_provider
from querybuddy.llm.models import AIModel, ProviderType, get_available_models
from querybuddy.llm.types import ChatMessage

# Longest tool result echoed to the terminal.
_RESULT_PREVIEW_CHARS = 500


class AppContext:
    """Holds initialized application components."""

    def __init__(self, model_override: str | None = None):
        load_dotenv(get_project_root() / ".env")
        self.settings: Settings = load_settings()
        setup_logging(self.settings.log_level)

        model_id = model_override or self.settings.llm.model
        try:
            self.model = AIModel.parse(model_id)
        except ProviderError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        self.api_key = self.settings.api_key_for(self.model.provider)
        if not self.api_key and self.model.provider != ProviderType.COPILOT:
            click.echo(
                f"Error: no API key configured for {self.model.provider.value}. "
                "Add it to .env or environment.",
                err=True,
            )
            sys.exit(1)

    def create_provider(self):
        return create_provider(self.model.provider, self.api_key, settings=self.settings)

    def create_agent(self, db_path: str | None) -> Agent:
        database = self.settings.database
        path = Path(db_path) if db_path else get_project_root() / database.path
        data_access = SQLiteDataAccess({database.connection_id: path})
        return Agent(
            provider=self.create_provider(),
            model=self.model,
            data_access=data_access,
            connection_id=database.connection_id,
            db_type=database.type,
            max_iterations=self.settings.llm.max_iterations,
            queue_size=self.settings.llm.stream_queue_size,
        )


@click.group()
@click.version_option(version="0.1.0", prog_name="querybuddy")
def cli():
    """querybuddy - Chat with your database through any LLM"""
    pass


@cli.command()
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="SQLite database file")
@click.option("--model", "-m", default=None, help="Model id, e.g. gpt-5 or anthropic/claude-sonnet-4-5")
def chat(db_path: str | None, model: str | None):
    """Start an interactive chat session against a database."""
    asyncio.run(_chat(db_path, model))


async def _chat(db_path: str | None, model_override: str | None):
    ctx = AppContext(model_override)
    agent = ctx.create_agent(db_path)

    click.echo(f"Chat session started with model: {ctx.model.id}")
    click.echo("Type 'exit' or 'quit' to end the session, 'clear' to reset history.\n")

    while True:
        try:
            user_input = click.prompt("You", prompt_suffix="> ")
        except (EOFError, KeyboardInterrupt, click.Abort):
            click.echo("\nGoodbye!")
            break

        command = user_input.strip().lower()
        if command in ("exit", "quit"):
            click.echo("Goodbye!")
            break
        if command == "clear":
            agent.clear_history()
            click.echo("History cleared.\n")
            continue
        if not command:
            continue

        click.echo("\nQuerybuddy> ", nl=False)
        async with agent.chat_stream(user_input) as stream:
            async for event in stream:
                _render(event)
        click.echo("\n")

    await agent.aclose()


def _render(event) -> None:
    if isinstance(event, Content):
        click.echo(event.text, nl=False)
    elif isinstance(event, ToolCallStarted):
        click.secho(f"\n[tool] {event.name}", dim=True)
    elif isinstance(event, ToolResult):
        preview = event.result
        if len(preview) > _RESULT_PREVIEW_CHARS:
            preview = preview[:_RESULT_PREVIEW_CHARS] + "..."
        click.secho(preview, dim=True)
    elif isinstance(event, Failed):
        click.secho(f"\nError: {event.message}", fg="red", err=True)
    elif isinstance(event, Finished):
        pass


@cli.command()
@click.argument("message")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None, help="SQLite database file")
@click.option("--model", "-m", default=None, help="Model id")
def ask(message: str, db_path: str | None, model: str | None):
    """Ask a single question and exit."""
    asyncio.run(_ask(message, db_path, model))


async def _ask(message: str, db_path: str | None, model_override: str | None):
    ctx = AppContext(model_override)
    agent = ctx.create_agent(db_path)
    try:
        answer = await agent.chat(message)
    except ProviderError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        await agent.aclose()
    click.echo(answer)


@cli.command("models")
@click.option("--copilot", is_flag=True, help="Also list models from the Copilot CLI")
def list_models(copilot: bool):
    """List available models."""
    models = get_available_models()
    if copilot:
        models += asyncio.run(_copilot_models())

    click.echo(f"{'ID':<40} {'Name':<25} {'Provider'}")
    click.echo("-" * 80)
    for m in models:
        click.echo(f"{m.id:<40} {m.name:<25} {m.provider.value}")


async def _copilot_models():
    settings = load_settings()
    provider = create_provider(ProviderType.COPILOT, "", settings=settings)
    try:
        return await provider.fetch_models()
    except ProviderError as e:
        click.echo(f"Warning: could not list Copilot models: {e}", err=True)
        return []


@cli.command("validate-key")
@click.option("--model", "-m", required=True, help="Model id to validate against")
def validate_key(model: str):
    """Check that the configured API key works for a model."""
    asyncio.run(_validate_key(model))


async def _validate_key(model_id: str):
    ctx = AppContext(model_id)
    provider = ctx.create_provider()
    try:
        await provider.chat(ctx.model, [ChatMessage.user("Hi")], [])
    except ProviderError as e:
        click.echo(f"Invalid: {e}", err=True)
        sys.exit(1)
    finally:
        aclose = getattr(provider, "aclose", None)
        if aclose is not None:
            await aclose()
    click.echo(f"API key for {ctx.model.provider.value} is valid.")


if __name__ == "__main__":
    cli()
