import asyncio

from tokenflow.clients import BirdeyeTokenClient, HeliusHistoryClient, SolanaRpcClient, TransactionStream
from tokenflow.core.config import Config
from tokenflow.core.enums import BackfillMode, ServiceStatus
from tokenflow.core.exceptions import ServiceError
from tokenflow.core.models import CheckpointModel
from tokenflow.core.protocols import Service
from tokenflow.database.connection import DatabaseConnection
from tokenflow.database.repositories import CheckpointRepository, TransferRepository
from tokenflow.utils.logger import LoggerSetup
from tokenflow.utils.time import format_time_difference, get_current_timestamp
from .backfill import BackfillEngine, BackfillResult
from .live_buffer import LiveIngestionBuffer
from .universe import TokenUniverse


class IngestionService(Service):
    """
    Runs the token transfer pipeline.

    Startup order:
    - Store connectivity and schema
    - Checkpoint row seeded with the current slot
    - Token universe load and refresh loop
    - Live buffer and push feed subscription, resumed from the checkpoint
    - Historical backfill in the background when selected

    Failing to reach the store or to subscribe to the feed aborts startup.
    Everything after that is contained and logged.
    """
    def __init__(self,
                 db: DatabaseConnection,
                 transfer_repository: TransferRepository,
                 checkpoint_repository: CheckpointRepository,
                 rpc_client: SolanaRpcClient,
                 history_client: HeliusHistoryClient,
                 discovery_client: BirdeyeTokenClient,
                 stream: TransactionStream,
                 config: Config):

        # Core dependencies
        self.db = db
        self.transfer_repository = transfer_repository
        self.checkpoint_repository = checkpoint_repository
        self.rpc_client = rpc_client
        self.history_client = history_client
        self.discovery_client = discovery_client
        self.stream = stream
        self._config = config

        # Core components
        self.universe = TokenUniverse(discovery_client, config.universe)
        self.backfill_engine = BackfillEngine(
            history_client=history_client,
            sink=transfer_repository,
            universe=self.universe,
            config=config.backfill
        )
        self.live_buffer: LiveIngestionBuffer | None = None

        # Service state
        self._status: ServiceStatus = ServiceStatus.STOPPED
        self._start_time: int | None = None
        self._start_slot: int | None = None
        self._last_error: Exception | None = None
        self._stream_errors = 0
        self._backfill_results: list[BackfillResult] | None = None

        # Task management
        self._backfill_task: asyncio.Task | None = None

        self.logger = LoggerSetup.setup(__class__.__name__)


    async def start(self) -> None:
        """Start ingestion service"""
        try:
            self._status = ServiceStatus.STARTING
            self._start_time = get_current_timestamp()
            self.logger.info("Starting ingestion service")

            await self._check_store()

            self._start_slot = await self.rpc_client.get_slot(self._config.stream.commitment)
            checkpoint = await self.checkpoint_repository.ensure(seed_slot=self._start_slot)
            self.logger.info(
                f"Current slot {self._start_slot}, checkpoint {checkpoint.last_processed_slot}, "
                f"streaming start {checkpoint.streaming_start_slot}"
            )

            universe_ready = await self.universe.load_initial()
            await self.universe.start()

            # Decided before seeding, which makes streaming_start_slot non-null
            run_backfill = self._should_backfill(checkpoint, universe_ready)
            await self.checkpoint_repository.seed_streaming_start(self._start_slot)

            self.live_buffer = LiveIngestionBuffer(
                sink=self.transfer_repository,
                checkpoints=self.checkpoint_repository,
                universe=self.universe,
                config=self._config.live,
                initial_checkpoint_slot=checkpoint.last_processed_slot,
                max_batch_rows=self._config.database.max_batch_rows
            )
            await self.live_buffer.start()

            await self.stream.subscribe(
                on_update=self.live_buffer.handle_update,
                on_error=self._on_stream_error,
                from_slot=checkpoint.last_processed_slot
            )

            if run_backfill:
                self._backfill_task = asyncio.create_task(self._run_backfill())

            self._status = ServiceStatus.RUNNING
            self.logger.info("Ingestion service started successfully")

        except Exception as e:
            self._status = ServiceStatus.ERROR
            self._last_error = e
            self.logger.error(f"Failed to start ingestion service: {e}")
            raise ServiceError(f"Service start failed: {str(e)}")


    async def stop(self) -> None:
        """Stop ingestion service"""
        self._status = ServiceStatus.STOPPING
        self.logger.info("Stopping ingestion service")

        try:
            await self.stream.cancel()
        except Exception as e:
            self.logger.error(f"Error cancelling transaction stream: {e}")

        if self._backfill_task:
            self._backfill_task.cancel()
            try:
                await self._backfill_task
            except asyncio.CancelledError:
                pass
            self._backfill_task = None

        await self.universe.stop()

        if self.live_buffer:
            await self.live_buffer.stop()

        for client in (self.rpc_client, self.history_client, self.discovery_client):
            try:
                await client.cleanup()
            except Exception as e:
                self.logger.error(f"Error closing {type(client).__name__}: {e}")

        self._status = ServiceStatus.STOPPED
        self.logger.info("Ingestion service stopped successfully")


    async def _check_store(self) -> None:
        await self.db.initialize()
        health = await self.db.check_health()
        if not health['connection_ok']:
            raise ServiceError(f"Database unavailable: {health.get('error')}")
        if self._config.database.auto_create:
            await self.db.create_tables()


    def _should_backfill(self, checkpoint: CheckpointModel, universe_ready: bool) -> bool:
        mode = self._config.backfill.mode
        if mode is BackfillMode.NEVER:
            self.logger.info("Backfill disabled")
            return False
        if mode is BackfillMode.AUTO and checkpoint.streaming_start_slot is not None:
            self.logger.info(
                f"Streaming already attached at slot {checkpoint.streaming_start_slot}, skipping backfill"
            )
            return False
        if not universe_ready:
            self.logger.warning("Token universe is empty, skipping backfill for this run")
            return False
        return True


    async def _run_backfill(self) -> None:
        try:
            self._backfill_results = await self.backfill_engine.run()
        except asyncio.CancelledError:
            self.logger.info("Backfill cancelled")
            raise
        except Exception as e:
            self._last_error = e
            self.logger.error(f"Backfill pass failed: {e}")


    def _on_stream_error(self, error: Exception) -> None:
        self._stream_errors += 1
        self._last_error = error
        self.logger.error(f"Transaction stream error: {error}")


    def get_service_status(self) -> str:
        """Get comprehensive service status"""
        uptime = "n/a"
        if self._start_time is not None:
            uptime = format_time_difference(get_current_timestamp() - self._start_time)

        buffer = self.live_buffer.get_status() if self.live_buffer else {}
        stream = self.stream.get_status()
        universe = self.universe.get_status()
        backfill = self.backfill_engine.get_status()

        status_lines = [
            "Ingestion Service Status:",
            f"Service State: {self._status.value}",
            f"Uptime: {uptime}",
            f"Start Slot: {self._start_slot}",
            "",
            "Token Universe:",
            f"  Mints: {universe['mints']} (refreshed {universe['refreshed_at']})",
            "",
            "Live Ingestion:",
            f"  Stream Connected: {stream['connected']} (last slot {stream['last_slot']}, "
            f"reconnects {stream['reconnects']}, errors {self._stream_errors})",
            f"  Buffered: {buffer.get('buffered', 0)}, Written: {buffer.get('written', 0)}, "
            f"Failed Flushes: {buffer.get('failed_flushes', 0)}",
            f"  Checkpoint Slot: {buffer.get('checkpoint_slot')}",
            "",
            "Backfill:",
            f"  Running: {bool(self._backfill_task and not self._backfill_task.done())}",
            f"  Active: {len(backfill['active'])}, Completed: {backfill['completed']}, "
            f"Failed: {len(backfill['failed'])}",
        ]
        status_lines.extend(f"  {line}" for line in backfill['active'].values())

        if self._last_error:
            status_lines.extend([
                "",
                "Recent Error:",
                f"{type(self._last_error).__name__} {str(self._last_error)}"
            ])

        return "\n".join(status_lines)
