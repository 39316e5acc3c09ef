from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .service import IngestionService
from tokenflow.clients import BirdeyeTokenClient, HeliusHistoryClient, SolanaRpcClient, TransactionStream
from tokenflow.core.config import Config
from tokenflow.database.connection import DatabaseConnection
from tokenflow.database.repositories import CheckpointRepository, TransferRepository
from tokenflow.utils.logger import LoggerSetup

logger = LoggerSetup.setup(__name__)

service: Optional[IngestionService] = None
db: Optional[DatabaseConnection] = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Service lifecycle manager"""
    global service, db

    try:
        config = Config()
        LoggerSetup.configure(
            config.logging.log_dir,
            config.logging.level,
            max_bytes=config.logging.max_size,
            backup_count=config.logging.backup_count
        )

        # Initialize database connection
        db = DatabaseConnection(config.database)
        await db.initialize()

        # Initialize repositories
        transfer_repository = TransferRepository(db)
        checkpoint_repository = CheckpointRepository(db)

        service = IngestionService(
            db=db,
            transfer_repository=transfer_repository,
            checkpoint_repository=checkpoint_repository,
            rpc_client=SolanaRpcClient(config.helius),
            history_client=HeliusHistoryClient(config.helius),
            discovery_client=BirdeyeTokenClient(config.birdeye),
            stream=TransactionStream(config.stream),
            config=config
        )

        await service.start()

        yield  # Service is running

    except Exception as e:
        logger.error(f"Service initialization failed: {e}")
        raise

    finally:
        # Cleanup
        if service:
            await service.stop()
        if db:
            await db.close()

# Initialize FastAPI app
app = FastAPI(
    title="Token Transfer Ingestion Service",
    description="Backfill and live ingestion of token transfers",
    version="1.0.0",
    lifespan=lifespan
)

# Service endpoints
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    if not service or not db:
        raise HTTPException(status_code=503, detail="Service not initialized")

    database = await db.check_health()
    if not database["connection_ok"]:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {database.get('error')}")

    return {
        "status": "healthy",
        "service_status": service._status.value,
        "tracked_mints": len(service.universe.snapshot()),
        "stream_connected": service.stream.is_connected
    }

@app.get("/status")
async def get_status():
    """Get detailed service status"""
    if not service:
        raise HTTPException(status_code=503, detail="Service not initialized")

    return {
        "status": service.get_service_status(),
        "stored_transfers": await service.transfer_repository.count()
    }

@app.get("/checkpoint")
async def get_checkpoint():
    """Get the stored ingestion checkpoint"""
    if not service:
        raise HTTPException(status_code=503, detail="Service not initialized")

    try:
        checkpoint = await service.checkpoint_repository.read()
        return checkpoint.model_dump(mode="json")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to read checkpoint: {str(e)}")

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler"""
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {str(exc)}"}
    )

def run() -> None:
    """Console entry point"""
    import uvicorn

    config = Config()
    uvicorn.run(
        "tokenflow.services.ingestion.main:app",
        host=config.api.host,
        port=config.api.port
    )

if __name__ == "__main__":
    run()
