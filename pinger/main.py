from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from aiohttp import web

from feed.balance import BalanceWatcher, LowBalanceError
from feed.blockhash import BlockhashWatcher
from feed.cells import FreshnessCell
from feed.fees import FeeWatcher
from feed.slot import SlotWatcher
from feed.stream import WatcherFailedError, stream_headers
from feed.subscriptions import SubscriptionManager
from feed.types import BlockRef
from infra.metrics import METRICS
from infra.prom import ProbeMetrics, start_metrics_server
from infra.rpc import AsyncRPC
from pinger import config
from pinger.artifacts import SendJournal, configure_logging
from pinger.config import ConfigError, Settings, load_settings
from pinger.cycle import ProbeCycleEngine
from pinger.gate import FreshnessGate, StaleStateError
from pinger.rate_limit import SendRateLimiter
from pinger.reporting import PrometheusSink, ResultSink, ValidatorsAppSink
from pinger.sender import HttpSendTransport, RpcTransport
from pinger.signer import ProbeSigner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def build_signer(settings: Settings) -> ProbeSigner:
    try:
        return ProbeSigner.from_base58(settings.wallet_keypair)
    except ValueError as e:
        raise ConfigError(f"WALLET_PRIVATE_KEYPAIR: {e}") from None


async def run(settings: Settings, signer: ProbeSigner) -> None:
    """Start the watchers and the cycle loop; returns only by raising."""
    headers = stream_headers(settings.ws_x_token)
    stream_kwargs = dict(
        headers=headers,
        reconnect_delay_s=settings.watcher_reconnect_delay_s,
        max_reconnects=settings.watcher_max_reconnects,
    )

    block_cell: FreshnessCell[BlockRef] = FreshnessCell("blockhash")
    slot_cell: FreshnessCell[int] = FreshnessCell("slot")
    fee_cell: Optional[FreshnessCell[int]] = FreshnessCell("priority_fee") if settings.use_priority_fee else None

    rpc = AsyncRPC(settings.rpc_endpoint, default_timeout_s=config.RPC_DEFAULT_TIMEOUT_S)
    subscriptions = SubscriptionManager(settings.ws_endpoint, commitment=settings.commitment, **stream_kwargs)

    jobs: Dict[str, Callable[[], Awaitable[None]]] = {
        "blockhash": BlockhashWatcher(
            settings.ws_endpoint, block_cell, commitment=settings.commitment, **stream_kwargs
        ).run,
        "slot": SlotWatcher(settings.ws_endpoint, slot_cell, **stream_kwargs).run,
        "subscriptions": subscriptions.run,
    }
    if fee_cell is not None:
        jobs["priority_fees"] = FeeWatcher(rpc, fee_cell, percentile=settings.priority_fee_percentile).run

    balance: Optional[BalanceWatcher] = None
    if settings.min_balance_sol > 0:
        balance = BalanceWatcher(
            rpc, signer.address, FreshnessCell("balance"), min_balance_sol=settings.min_balance_sol
        )
        jobs["balance"] = balance.run

    transport = HttpSendTransport(settings.send_tx_endpoint) if settings.send_tx_endpoint else RpcTransport(rpc)

    sinks: List[ResultSink] = []
    va_sink: Optional[ValidatorsAppSink] = None
    if not settings.skip_validators_app and settings.va_api_key:
        va_sink = ValidatorsAppSink(
            settings.va_api_key,
            endpoint=settings.va_endpoint,
            commitment=settings.commitment,
            pinger_region=settings.pinger_region,
            priority_fee_percentile=settings.priority_fee_percentile,
        )
        sinks.append(va_sink)

    runner: Optional[web.AppRunner] = None
    if not settings.skip_prometheus:
        metrics = ProbeMetrics()
        runner = await start_metrics_server(metrics, settings.prometheus_host, settings.prometheus_port)
        sinks.append(PrometheusSink(metrics, settings.pinger_name))

    journal = SendJournal(Path(settings.results_dir)) if settings.results_dir else None
    if journal is not None:
        logger.info("[Main] Journaling sends to %s", journal.path)

    engine = ProbeCycleEngine(
        gate=FreshnessGate(
            block_cell,
            slot_cell,
            fee_cell,
            blockhash_max_age_ms=settings.blockhash_max_age_ms,
            slot_max_age_ms=settings.slot_max_age_ms,
            fee_max_age_ms=settings.fee_max_age_ms,
            stale_fatal_s=settings.stale_fatal_s,
        ),
        limiter=SendRateLimiter(settings.txs_per_minute_limit),
        signer=signer,
        transport=transport,
        subscriptions=subscriptions,
        sinks=sinks,
        wallet_mode=settings.subscription_mode == "wallet",
        timeout_s=settings.tx_confirmation_timeout_s,
        resend_interval_ms=settings.tx_resend_interval_ms,
        sleep_ms_loop=settings.sleep_ms_loop,
        balance=balance,
        journal=journal,
    )
    jobs["cycle"] = engine.run_forever

    tasks = {asyncio.create_task(job(), name=name): name for name, job in jobs.items()}
    logger.info("[Main] Started %s for wallet %s", ", ".join(tasks.values()), signer.address)
    try:
        done, _ = await asyncio.wait(tasks.keys(), return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.error("[Main] Task %s stopped: %s", tasks[task], exc)
                raise exc
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks.keys(), return_exceptions=True)
        await rpc.close()
        if isinstance(transport, HttpSendTransport):
            await transport.close()
        if va_sink is not None:
            await va_sink.close()
        if runner is not None:
            await runner.cleanup()
        logger.info("[Main] Counters: %s", METRICS.snapshot()["counters"])


async def _run_until_signal(settings: Settings, signer: ProbeSigner) -> None:
    current = asyncio.current_task()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, current.cancel)
    except (NotImplementedError, RuntimeError):
        pass
    await run(settings, signer)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Solana ping thing: continuous transaction latency probe")
    parser.add_argument("--log-dir", default="", help="also write logs to <log-dir>/run.log")
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    configure_logging(Path(args.log_dir) if args.log_dir else None, verbose=args.verbose)

    try:
        settings = load_settings()
        signer = build_signer(settings)
    except ConfigError as e:
        logger.error("[Main] Configuration error: %s", e)
        return EXIT_CONFIG

    if settings.verbose_log:
        logging.getLogger().setLevel(logging.DEBUG)
    logger.info("[Main] Settings: %s", settings.redacted())

    started = time.time()
    try:
        asyncio.run(_run_until_signal(settings, signer))
    except (StaleStateError, WatcherFailedError, LowBalanceError) as e:
        logger.critical("[Main] Fatal: %s", e)
        return EXIT_FATAL
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("[Main] Stopped after %.0fs", time.time() - started)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
