from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.clients.whatsapp_gateway import WhatsAppGatewayClient
from app.core.config import settings
from app.core.logging_conf import setup_logging
from app.db.redis_client import redis_client
from app.db.session import async_session, init_models
from app.routers import queue
from app.services.bulk_operations import BulkOperationsFacade
from app.services.locks import ProjectLocks
from app.services.metrics_aggregator import MetricsAggregator, MetricsPublisher, MetricsRefresher
from app.services.queue_runner import QueueRunner


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await init_models()

    locks = ProjectLocks()
    gateway = WhatsAppGatewayClient(url=settings.GATEWAY_URL, token=settings.GATEWAY_TOKEN)
    aggregator = MetricsAggregator()
    publisher = MetricsPublisher(redis=redis_client)
    refresher = MetricsRefresher(async_session, aggregator, publisher)
    runner = QueueRunner(async_session, gateway, locks=locks, on_tick=refresher.refresh)

    app.state.bulk_operations = BulkOperationsFacade(async_session, locks)
    app.state.queue_runner = runner
    app.state.metrics_aggregator = aggregator
    app.state.metrics_publisher = publisher

    await runner.start()
    await refresher.start()
    try:
        yield
    finally:
        await runner.stop()
        await refresher.stop()
        await gateway.close()
        await redis_client.aclose()


app = FastAPI(
    title="Lead Queue Automation",
    version="1.0.0",
    lifespan=lifespan,
)

# --- Register Routers ---
app.include_router(queue.router)    # /api/v1/queue/*


# --- Root health check ---
@app.get("/")
async def root():
    return {"message": "Lead Queue Automation API is running"}
