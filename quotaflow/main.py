"""Main entry point for the quotaflow application.

Sets up the Typer CLI application, performs dependency injection (Composition Root),
defines CLI commands, and delegates execution to the CommandHandler.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine, Dict, List, Optional

import typer
from typing_extensions import Annotated

from quotaflow.core.command_handler import CommandHandler
from quotaflow.core.services.generation_service import GenerationService
from quotaflow.domain.models.common import MEDIA_SERVICE, TEXT_SERVICE
from quotaflow.infrastructure.cli.display import ConsoleDisplay
from quotaflow.infrastructure.config.settings import (
    DEFAULT_CONFIG_FILE, PollingSettings, RateLimitSettings, ResilienceSettings,
    credentials_for_service, get_config, load_configuration,
)
from quotaflow.infrastructure.monitoring.logger_setup import DEFAULT_LOG_FORMAT, setup_logging
from quotaflow.infrastructure.persistence.record_store import JsonRecordStore
from quotaflow.infrastructure.providers.http_task_api import DEFAULT_AUTH_HEADER, HttpTaskApi
from quotaflow.infrastructure.providers.openai_transport import GroqTextTransport, OpenAITextTransport
from quotaflow.infrastructure.resilience.backoff import BackoffPolicy
from quotaflow.infrastructure.resilience.call_orchestrator import CallOrchestrator
from quotaflow.infrastructure.resilience.key_pool import KeyPool
from quotaflow.infrastructure.resilience.rate_limiter import AdmissionController
from quotaflow.infrastructure.resilience.task_poller import TaskPoller

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_BASE_URL = "https://api.freepik.com/v1"


# --- Dependency Injection (Manual) ---

def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]


def build_orchestrator(service: str, credentials: List[str], resilience: ResilienceSettings) -> CallOrchestrator:
    """Wires a key pool and admission controller for one service."""
    limits = RateLimitSettings.from_config(service)
    key_pool = KeyPool(service, credentials, block_timeout_s=resilience.block_timeout_s)
    admission = AdmissionController(
        service,
        max_per_second=limits.max_per_second,
        burst_max=limits.burst_max,
        burst_window_s=limits.burst_window_s,
    )
    return CallOrchestrator(
        key_pool,
        admission,
        max_retries=resilience.max_retries,
        max_total_attempts=resilience.max_total_attempts,
        backoff=BackoffPolicy(base_delay_s=resilience.base_delay_s, max_delay_s=resilience.max_delay_s),
        call_timeout_s=resilience.call_timeout_s,
        model_switch_delay_s=resilience.model_switch_delay_s,
    )


def create_dependencies(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Creates and wires up all dependencies for one CLI invocation.

    This acts as the Composition Root. Nothing is cached at module level, so
    every invocation (and every test) gets fresh pools and limiters.
    """
    load_configuration(config_file or DEFAULT_CONFIG_FILE)
    setup_logging(
        log_level=get_config("logging.level", "INFO"),
        log_format=get_config("logging.format", DEFAULT_LOG_FORMAT),
        log_file=get_config("logging.file"),
    )
    logger.info("Initializing application dependencies...")

    resilience = ResilienceSettings.from_config()
    polling = PollingSettings.from_config()
    dependencies: Dict[str, Any] = {"ui": ConsoleDisplay()}

    text_orchestrator = None
    text_transport = None
    text_credentials = credentials_for_service(TEXT_SERVICE)
    if text_credentials:
        provider = str(get_config("services.text.provider", "openai")).lower()
        transport_cls = GroqTextTransport if provider == "groq" else OpenAITextTransport
        text_transport = transport_cls(
            base_url=get_config("services.text.base_url"),
            default_model=get_config("services.text.model"),
        )
        text_orchestrator = build_orchestrator(TEXT_SERVICE, text_credentials, resilience)
    else:
        logger.warning("No text credentials found, text generation disabled.")

    media_poller = None
    media_credentials = credentials_for_service(MEDIA_SERVICE)
    if media_credentials:
        task_api = HttpTaskApi(
            base_url=str(get_config("services.media.base_url", DEFAULT_MEDIA_BASE_URL)),
            auth_header=str(get_config("services.media.auth_header", DEFAULT_AUTH_HEADER)),
        )
        media_poller = TaskPoller(
            build_orchestrator(MEDIA_SERVICE, media_credentials, resilience),
            task_api,
            poll_interval_s=polling.interval_s,
            timeout_s=polling.timeout_s,
        )
    else:
        logger.warning("No media credentials found, media rendering disabled.")

    records_file = get_config("records.file")
    record_store = JsonRecordStore(Path(records_file).expanduser()) if records_file else None

    dependencies["generation_service"] = GenerationService(
        text_orchestrator=text_orchestrator,
        text_transport=text_transport,
        media_poller=media_poller,
        record_store=record_store,
        default_text_model=get_config("services.text.model"),
        fallback_text_models=_as_list(get_config("services.text.fallback_models")),
    )
    dependencies["command_handler"] = CommandHandler(
        generation_service=dependencies["generation_service"],
        ui=dependencies["ui"],
    )
    logger.info("All dependencies initialized successfully.")
    return dependencies


# --- Typer App Definition ---
app = typer.Typer(
    name="quotaflow",
    help="quotaflow: resilient calls to quota-limited AI APIs with pooled credentials.",
    add_completion=False,
)


# --- Helper for Running Async Commands ---
def run_async(coro: Coroutine[Any, Any, Any], generation_service: Optional[GenerationService] = None) -> Any:
    """Runs an async command from a sync Typer command, closing provider clients afterwards."""
    async def _runner() -> Any:
        try:
            return await coro
        finally:
            if generation_service is not None:
                await generation_service.aclose()

    return asyncio.run(_runner())


def _dependencies_from(ctx: typer.Context) -> Dict[str, Any]:
    config_file = (ctx.obj or {}).get("config_file")
    try:
        return create_dependencies(config_file)
    except Exception as e:
        logger.error(f"Fatal Error during application initialization: {e}", exc_info=True)
        ConsoleDisplay().display_error(f"Application Initialization Failed: {e}")
        raise typer.Exit(code=1) from e


# --- CLI Commands ---

@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to a YAML config file (default: ~/.quotaflow/config.yaml)."),
    ] = None,
):
    """Resilient calls to quota-limited AI APIs."""
    ctx.obj = {"config_file": config}


@app.command()
def stats(ctx: typer.Context):
    """Show per-credential health and admission counters."""
    handler: CommandHandler = _dependencies_from(ctx)["command_handler"]
    handler.handle_stats()


@app.command(name="generate-text")
def generate_text_command(
    ctx: typer.Context,
    prompt: Annotated[str, typer.Argument(help="Prompt sent as the user message.")],
    model: Annotated[Optional[str], typer.Option("--model", "-m", help="Model to use (default from config).")] = None,
    system: Annotated[Optional[str], typer.Option("--system", "-s", help="Optional system message.")] = None,
):
    """Generate text with credential rotation and model fallback."""
    dependencies = _dependencies_from(ctx)
    handler: CommandHandler = dependencies["command_handler"]
    ok = run_async(handler.handle_generate_text(prompt, model=model, system=system), dependencies["generation_service"])
    if not ok:
        raise typer.Exit(code=1)


@app.command(name="render-media")
def render_media_command(
    ctx: typer.Context,
    endpoint: Annotated[str, typer.Argument(help="Task endpoint, e.g. 'ai/text-to-image/seedream-v4'.")],
    payload: Annotated[str, typer.Argument(help="JSON request body.")],
    shard: Annotated[Optional[int], typer.Option("--shard", help="Shard id used to spread jobs over credentials.")] = None,
    timeout: Annotated[Optional[float], typer.Option("--timeout", help="Polling deadline in seconds.")] = None,
    record: Annotated[Optional[str], typer.Option("--record", help="Record id to append the result to.")] = None,
):
    """Submit a media job and wait for its deliverables."""
    dependencies = _dependencies_from(ctx)
    handler: CommandHandler = dependencies["command_handler"]
    ok = run_async(
        handler.handle_render_media(endpoint, payload, shard_id=shard, timeout_s=timeout, record_id=record),
        dependencies["generation_service"],
    )
    if not ok:
        raise typer.Exit(code=1)


# --- Main Execution Guard ---

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    app()


if __name__ == "__main__":
    cli_entry_point()
