import argparse
import asyncio
import contextlib
import logging
import signal
from typing import Dict, List, Optional

from aiohttp import web

from .access import AccessPolicy
from .api import GateApi
from .chains import create_blockchains, make_rpc_clients
from .chains.base import Blockchain
from .config import AppConfig, load_config
from .errors import ConfigError, StartupError
from .ledger import LedgerService
from .notifier import AccessNotifier, TelegramNotifier
from .rpc import RPCClient
from .storage import Storage
from .sync import SyncEngine, SyncIntervals

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class SharesGateApp:
    def __init__(
        self,
        cfg: AppConfig,
        storage: Optional[Storage] = None,
        notifier: Optional[AccessNotifier] = None,
        chains: Optional[List[Blockchain]] = None,
    ):
        self.cfg = cfg
        self.storage = storage or Storage(cfg.sqlite_path)
        self.rpc_clients: Dict[str, RPCClient] = {}
        if chains is None:
            self.rpc_clients = make_rpc_clients(cfg)
            chains = create_blockchains(cfg, self.rpc_clients)
        self.chains = chains
        self.notifier = notifier or TelegramNotifier(cfg.telegram_api_url, timeout_sec=cfg.rpc_timeout_sec)
        self.ledger = LedgerService(self.storage)
        self.policy = AccessPolicy(
            self.storage,
            self.notifier,
            default_bot_token=cfg.telegram_bot_token,
            default_chat_id=cfg.telegram_group_id,
            clear_gate_on_ungate=cfg.clear_gate_on_ungate,
        )
        intervals = SyncIntervals(
            idle_sec=cfg.idle_sleep_sec,
            retry_sec=cfg.retry_sleep_sec,
            pace_sec=cfg.pace_sleep_sec,
        )
        self.engines: Dict[str, SyncEngine] = {
            c.name: c.create_sync_engine(self.storage, self.ledger, self.policy, intervals)
            for c in self.chains
        }
        self.api = GateApi(cfg, self.storage, self.policy, self.chains, self.engines)
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self._runner: Optional[web.AppRunner] = None

    async def __aenter__(self) -> "SharesGateApp":
        for rpc in self.rpc_clients.values():
            await rpc.__aenter__()
        if isinstance(self.notifier, TelegramNotifier):
            await self.notifier.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        for rpc in self.rpc_clients.values():
            await rpc.__aexit__(exc_type, exc, tb)
        if isinstance(self.notifier, TelegramNotifier):
            await self.notifier.__aexit__(exc_type, exc, tb)
        self.storage.close()

    async def probe_chains(self) -> None:
        for chain in self.chains:
            await chain.probe()

    async def supervise(self, engine: SyncEngine) -> None:
        # A crashed worker is restarted; it never takes other chains down.
        while not engine.stop_event.is_set():
            try:
                await engine.run()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s sync worker crashed, restarting", engine.chain.name)
                engine.checkpoint = None
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(engine.stop_event.wait(), timeout=self.cfg.retry_sleep_sec)

    async def start_api(self) -> None:
        self._runner = web.AppRunner(self.api.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info("HTTP API listening on %s:%s", self.cfg.api_host, self.cfg.api_port)

    async def run(self) -> None:
        await self.probe_chains()
        for engine in self.engines.values():
            self.tasks.append(asyncio.create_task(self.supervise(engine)))
        await self.start_api()
        await self.stop_event.wait()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for engine in self.engines.values():
            engine.stop()
        if self.tasks:
            _, pending = await asyncio.wait(self.tasks, timeout=self.cfg.shutdown_drain_sec)
            for t in pending:
                logger.warning("worker did not drain in time, cancelling")
                t.cancel()
            for t in self.tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await t
            self.tasks = []
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Application shutdown complete")


async def main_async(config_path: str) -> None:
    cfg = load_config(config_path)
    configure_logging(cfg.log_level)
    async with SharesGateApp(cfg) as app:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            logger.info("Shutdown signal received, terminating all tasks")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(app.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await p
        await app.shutdown()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sync on-chain share trades and gate Telegram community access"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config))
    except KeyboardInterrupt:
        pass
    except (ConfigError, StartupError) as e:
        raise SystemExit(f"startup failed: {e}") from e


if __name__ == "__main__":
    main()
