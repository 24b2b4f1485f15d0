"""
FIELDVOICE Application Entry Point

Command-line entry for the voice command pipeline. Handles arguments,
configuration loading, signal handling and the listening loop.

Usage:
    fieldvoice                              # Listen on the microphone
    fieldvoice --config /path/to/config.yaml
    fieldvoice --log-level DEBUG
    fieldvoice --dry-run                    # Validate config and show provider chains
    fieldvoice --check-health               # Health-check configured providers
    fieldvoice --text "create job called Roof Repair"

Entry Points:
    - CLI: `fieldvoice` command (via pyproject.toml)
    - Direct: `python -m fieldvoice.main`
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import TYPE_CHECKING, Optional

from fieldvoice import __version__
from fieldvoice.config import FieldVoiceConfig, load_config
from fieldvoice.exceptions import ConfigurationError, FieldVoiceError
from fieldvoice.logging_config import get_logger, setup_logging
from fieldvoice.orchestrator import VoicePipeline, create_voice_pipeline
from fieldvoice.types import ActionOutcome, ActionType, ContextSnapshot, Entities, ProviderRole

if TYPE_CHECKING:
    from types import FrameType

__all__ = ["main", "async_main", "create_parser", "EchoActionExecutor"]

logger = get_logger(__name__)


# =============================================================================
# Argument Parser
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="fieldvoice",
        description="FIELDVOICE voice command pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=str,
        metavar="PATH",
        help="Path to configuration file (default: auto-discover)",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Set logging level (overrides config file)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        metavar="PATH",
        help="Path to log file (default: console only)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration, print provider chains and exit",
    )
    mode.add_argument(
        "--check-health",
        action="store_true",
        help="Run one health check on every configured provider and exit",
    )
    mode.add_argument(
        "--text",
        type=str,
        metavar="TRANSCRIPT",
        help="Run one transcript through the pipeline and print the result",
    )

    return parser


# =============================================================================
# Built-in executor
# =============================================================================


class EchoActionExecutor:
    """Stand-in executor for the CLI: reports the intent instead of acting on it."""

    async def execute(
        self,
        action: ActionType,
        entities: Entities,
        context: ContextSnapshot,
    ) -> ActionOutcome:
        detail = ", ".join(f"{k}={v}" for k, v in entities.items())
        print(f"  -> {action.value}({detail})")
        return ActionOutcome(success=True, detail=f"echoed {action.value}")


# =============================================================================
# Signal Handlers
# =============================================================================


class GracefulShutdown:
    """Manages graceful shutdown on SIGINT / SIGTERM.

    The first signal stops listening and releases the microphone; a second
    one forces an immediate exit.
    """

    def __init__(self) -> None:
        self._shutdown_requested = False
        self._shutdown_event: asyncio.Event | None = None
        self._original_handlers: dict[int, signal.Handlers] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def install_handlers(self) -> None:
        self._original_handlers[signal.SIGINT] = signal.signal(
            signal.SIGINT, self._handle_signal
        )
        self._original_handlers[signal.SIGTERM] = signal.signal(
            signal.SIGTERM, self._handle_signal
        )
        logger.debug("Signal handlers installed for graceful shutdown")

    def restore_handlers(self) -> None:
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        signal_name = signal.Signals(signum).name
        if self._shutdown_requested:
            logger.warning(f"Received {signal_name} again - forcing immediate exit")
            sys.exit(1)

        logger.info(f"Received {signal_name} - initiating graceful shutdown...")
        self._shutdown_requested = True
        if self._shutdown_event is not None:
            loop = self._loop
            if loop is not None and not loop.is_closed():
                loop.call_soon_threadsafe(self._shutdown_event.set)
            else:
                self._shutdown_event.set()

    def get_shutdown_event(self) -> asyncio.Event:
        """Event set when shutdown is requested; call from inside the loop."""
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
            self._loop = asyncio.get_running_loop()
        return self._shutdown_event


_shutdown_handler = GracefulShutdown()


def get_shutdown_handler() -> GracefulShutdown:
    return _shutdown_handler


# =============================================================================
# Output helpers
# =============================================================================


def describe_provider_chains(pipeline: VoicePipeline) -> str:
    lines = [f"Degradation level: {pipeline.level.value}"]
    for role in ProviderRole:
        descriptors = sorted(
            pipeline.registry.list_descriptors(role),
            key=lambda d: (d.priority, d.registration_index),
        )
        chain = " -> ".join(f"{d.name} [{d.tier.value}, p{d.priority}]" for d in descriptors)
        lines.append(f"  {role.value:<7} {chain or '(none)'}")
    return "\n".join(lines)


# =============================================================================
# Main Entry Points
# =============================================================================


async def async_main(args: argparse.Namespace, config: FieldVoiceConfig) -> int:
    """Async main: build the pipeline and run the requested mode."""
    pipeline = create_voice_pipeline(config, EchoActionExecutor())

    if args.dry_run:
        print(describe_provider_chains(pipeline))
        print("\nConfiguration is valid")
        return 0

    if args.check_health:
        try:
            results = await pipeline.registry.run_health_checks()
        finally:
            await pipeline.close_providers()
        for name, healthy in results.items():
            print(f"  {'ok  ' if healthy else 'FAIL'} {name}")
        pipeline.mode_controller.evaluate(reason="health check")
        print(describe_provider_chains(pipeline))
        return 0 if all(results.values()) else 1

    await pipeline.start()
    try:
        if args.text is not None:
            result = await pipeline.process_text(args.text)
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.succeeded else 1

        shutdown_event = get_shutdown_handler().get_shutdown_event()
        listen_task = asyncio.create_task(pipeline.run())
        stop_task = asyncio.create_task(shutdown_event.wait())
        logger.info("Listening. Press Ctrl+C to stop.")
        done, _ = await asyncio.wait(
            {listen_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        stop_task.cancel()
        if listen_task in done:
            device_failure = listen_task.result()
            if device_failure is not None:
                return 1
        else:
            pipeline.stop_listening()
            await listen_task
        return 0
    finally:
        await pipeline.stop()


def main() -> int:
    """Main entry point for the FIELDVOICE CLI."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(log_level=args.log_level or "INFO", log_file=args.log_file)
    logger.info(f"FIELDVOICE v{__version__} starting...")

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.log_level is None or args.log_file is None:
        setup_logging(
            log_level=args.log_level or config.log_level,
            log_file=args.log_file or config.log_file,
            json_format=config.log_json,
        )

    shutdown = get_shutdown_handler()
    shutdown.install_handlers()

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except FieldVoiceError as e:
        logger.error(f"FIELDVOICE error: {e}")
        return 1
    finally:
        shutdown.restore_handlers()
        logger.info("FIELDVOICE shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
