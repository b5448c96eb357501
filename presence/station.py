"""
Issuer station process entrypoint.

Run with:
    python -m presence.station

Keeps the credential pair rotating, listens to the store's push events and
feeds them, together with the issuer's own lifecycle events, into the
notification router.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from presence import config
from presence.context import PresenceContext, build_context
from presence.core.logging import configure_logging
from presence.credentials.render import render_png
from presence.domain.enums import IssuerAction, PushEventType
from presence.domain.models import PushEvent

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Install SIGINT/SIGTERM handlers that request a graceful shutdown."""
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_event.is_set():
            logger.info("Shutdown signal received, stopping station...")
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            # Windows fallback
            signal.signal(sig, lambda _s, _f: _request_stop())


def wire(ctx: PresenceContext, qr_path: Optional[str] = None) -> None:
    """Connect issuer and channel events to the router (and the QR file)."""
    ctx.issuer.subscribe(ctx.router.submit)
    for event_type in PushEventType:
        ctx.channel.on(event_type, ctx.router.submit)

    if qr_path:
        target = Path(qr_path)

        def _write_qr(event: PushEvent) -> None:
            if event.payload.get("action") == IssuerAction.STOPPED.value:
                return
            current = ctx.issuer.current
            if current is None:
                return
            target.write_bytes(render_png(current))
            logger.info("QR for %s written to %s", current.id, target)

        ctx.issuer.subscribe(_write_qr)


async def _retention_loop(ctx: PresenceContext, stop_event: asyncio.Event) -> None:
    interval = max(1.0, config.RETENTION_SWEEP_SECONDS)
    while not stop_event.is_set():
        try:
            ctx.router.evict_expired()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Retention sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def _run_station_session(ctx: PresenceContext, stop_event: asyncio.Event) -> None:
    """Start issuer, channel and sweeps; wait until shutdown is requested."""
    issuer_task = asyncio.create_task(ctx.issuer.run(stop_event, config.ISSUER_TICK_SECONDS))
    sweep_task = asyncio.create_task(_retention_loop(ctx, stop_event))
    ctx.channel.connect()
    logger.info("Station session started.")
    try:
        await stop_event.wait()
    finally:
        await ctx.channel.disconnect()
        sweep_task.cancel()
        await asyncio.gather(sweep_task, return_exceptions=True)
        ctx.issuer.stop()
        await asyncio.gather(issuer_task, return_exceptions=True)
        await ctx.router.drain()
        logger.info("Station session stopped.")


async def run_station_forever(ctx: PresenceContext, stop_event: asyncio.Event) -> None:
    """
    Keep the station alive with retry/backoff around session failures.
    """
    initial_backoff = max(0.5, config.STATION_RETRY_INITIAL_SECONDS)
    max_backoff = max(initial_backoff, config.STATION_RETRY_MAX_SECONDS)
    backoff = initial_backoff

    while not stop_event.is_set():
        try:
            await _run_station_session(ctx, stop_event)
            # Clean shutdown
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            if stop_event.is_set():
                return
            logger.exception("Station session crashed; retrying in %.1fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(max_backoff, backoff * 2.0)


async def main_async() -> None:
    if config.RUN_MODE != "station":
        logger.warning(
            "presence.station invoked with RUN_MODE=%s. Exiting without starting the issuer.",
            config.RUN_MODE,
        )
        return

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    ctx = build_context()
    wire(ctx, config.STATION_QR_PATH or None)
    logger.info("Starting station for %s.", ctx.boundary.name)
    try:
        await run_station_forever(ctx, stop_event)
    finally:
        await ctx.aclose()


def main() -> None:
    configure_logging()
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
