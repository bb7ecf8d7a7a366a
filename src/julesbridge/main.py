"""
main.py — JulesBridge Entry Point

Usage:
    julesbridge                             # default settings
    julesbridge --log-level DEBUG           # Verbose logging
    julesbridge --config path/to/config.yaml
    julesbridge --no-health                 # don't listen on $PORT
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional

from dotenv import find_dotenv, load_dotenv


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="julesbridge",
        description="JulesBridge — drive Jules coding sessions from Telegram",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $JULESBRIDGE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--no-health",
        action="store_true",
        default=False,
        help="Do not start the liveness endpoint",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from julesbridge.config.settings import ConfigError, load_settings
    from julesbridge.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    # CLI --log-level flag overrides config.yaml
    cfg = settings.logging
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=cfg.log_dir,
        json_format=cfg.json_format,
        console_output=cfg.console_output,
        max_bytes=cfg.max_file_size_mb * 1024 * 1024,
        backup_count=cfg.backup_count,
    )

    log = get_logger("julesbridge.main")
    return settings, log


def build_router(settings, client):
    """Wire the language service, resolver and monitor registry around a client."""
    from julesbridge.agent.monitor import MonitorRegistry, SessionMonitor
    from julesbridge.agent.resolver import SourceResolver
    from julesbridge.agent.router import SessionRouter
    from julesbridge.brain import LLMClientFactory
    from julesbridge.brain.transform import TextTransformService

    transform = TextTransformService.from_settings(
        settings, LLMClientFactory.from_settings(settings)
    )
    translate = settings.translation.enabled

    def monitor_factory(session_id, sink, seen_ids):
        return SessionMonitor.from_settings(
            settings,
            client=client,
            session_id=session_id,
            sink=sink,
            seen_ids=seen_ids,
            translator=transform.to_user if translate else None,
        )

    return SessionRouter(
        client=client,
        resolver=SourceResolver(transform),
        monitors=MonitorRegistry(),
        monitor_factory=monitor_factory,
        to_agent=transform.to_agent if translate else None,
    )


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    # .env in the working directory or any parent
    env_file = find_dotenv(usecwd=True)
    if env_file:
        load_dotenv(dotenv_path=env_file)

    settings, log = bootstrap(args)

    log.info(
        "julesbridge.starting",
        llm_provider=settings.llm.provider,
        llm_model=settings.llm.model,
        translation=settings.translation.enabled,
        scaling=settings.scaling.enabled,
    )

    from julesbridge.infra.scaling import CloudRunScaler
    from julesbridge.interfaces.health import start_health_server
    from julesbridge.interfaces.telegram import run_telegram
    from julesbridge.jules.client import JulesClient

    client = JulesClient.from_settings(settings)
    router = build_router(settings, client)
    scaler = CloudRunScaler.from_settings(settings)

    health = None
    if settings.health.enabled and not args.no_health:
        try:
            health = await start_health_server(settings.health.host, settings.health_port)
        except OSError as e:
            log.error("julesbridge.health_failed", port=settings.health_port, error=str(e))
            await client.close()
            return 1

    try:
        await run_telegram(settings=settings, router=router, scaler=scaler, log=log)
    except (OSError, RuntimeError) as e:
        log.exception("telegram.crashed", error=str(e), error_type=type(e).__name__)
        return 1
    finally:
        await router.shutdown()
        await client.close()
        if health is not None:
            health.close()
            await health.wait_closed()
        log.info("julesbridge.stopped")

    return 0


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
