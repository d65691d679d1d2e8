"""
WhatsApp Flow Engine Service

A FastAPI service that executes visual conversation flows for a WhatsApp CRM:
- Typed node graph (messages, templates, buttons, inputs, conditions, delays,
  API/webhook calls, contact updates)
- Durable run state in PostgreSQL, resumable on any worker
- Redis run locks and delay scheduling
- Execution trace and replay for the builder
- WebSocket streaming of run updates
"""

import logging
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
import asyncpg
import redis.asyncio as redis

from .config import config
from .core.interface import Collaborators
from .executors import EngineSettings
from .engine import FlowEngineService
from .persistence import FlowRepository, InMemoryFlowStore, InMemoryRunStore
from .adapters import (
    HttpxCaller,
    WhatsAppCloudSender,
    CrmContactMutator,
    RedisRunLock,
    RedisResumeScheduler,
    InMemoryRunLock,
    InMemoryResumeScheduler,
)
from .api.routes import router, set_dependencies
from .api.websocket import websocket_endpoint, send_run_update

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Global resources
db_pool: Optional[asyncpg.Pool] = None
redis_client: Optional[redis.Redis] = None
http_caller: Optional[HttpxCaller] = None
message_sender: Optional[WhatsAppCloudSender] = None
contact_mutator: Optional[CrmContactMutator] = None
flow_service: Optional[FlowEngineService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global db_pool, redis_client, http_caller, message_sender, contact_mutator, flow_service

    # Setup OpenTelemetry
    resource = Resource.create({"service.name": "flow-engine"})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    # Stores
    flow_store = None
    run_store = None
    try:
        db_pool = await asyncpg.create_pool(config.database_url, min_size=2, max_size=10)
        logger.info("Database connection established")

        repository = FlowRepository(db_pool)
        await repository.init_tables()
        flow_store = run_store = repository
    except Exception as e:
        logger.warning(f"Could not connect to database, using in-memory stores: {e}")
        flow_store = InMemoryFlowStore()
        run_store = InMemoryRunStore()

    # Locks and delay scheduling
    try:
        redis_client = redis.from_url(config.redis_url, decode_responses=True)
        await redis_client.ping()
        run_lock = RedisRunLock(redis_client, ttl_seconds=config.run_lock_ttl_seconds)
        scheduler = RedisResumeScheduler(redis_client)
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(f"Could not connect to Redis, using in-process lock and scheduler: {e}")
        redis_client = None
        run_lock = InMemoryRunLock()
        scheduler = InMemoryResumeScheduler()

    # Create clients
    http_caller = HttpxCaller()
    message_sender = WhatsAppCloudSender(
        access_token=config.whatsapp_access_token,
        phone_number_id=config.whatsapp_phone_number_id,
        api_version=config.meta_api_version,
    )
    contact_mutator = CrmContactMutator(base_url=config.crm_api_url, api_key=config.crm_api_key)

    flow_service = FlowEngineService(
        flow_store=flow_store,
        run_store=run_store,
        collaborators=Collaborators(
            message_sender=message_sender,
            http_caller=http_caller,
            contact_mutator=contact_mutator,
            scheduler=scheduler,
        ),
        run_lock=run_lock,
        settings=EngineSettings(
            max_node_visits=config.max_node_visits,
            input_max_attempts=config.input_max_attempts,
            default_api_timeout_ms=config.default_api_timeout_ms,
        ),
        listeners=[send_run_update],
    )
    set_dependencies(flow_service)

    logger.info("Flow engine service started")
    yield

    # Cleanup
    await http_caller.close()
    await message_sender.close()
    await contact_mutator.close()
    if redis_client:
        await redis_client.aclose()
    if db_pool:
        await db_pool.close()
    provider.shutdown()

    logger.info("Flow engine service stopped")


app = FastAPI(
    title="WhatsApp Flow Engine",
    description="Conversation automation flows for the WhatsApp CRM",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument with OpenTelemetry
FastAPIInstrumentor.instrument_app(app)

# Include API routes
app.include_router(router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.websocket("/ws/runs/{run_id}")
async def run_websocket(websocket: WebSocket, run_id: str):
    """WebSocket endpoint for run streaming."""
    await websocket_endpoint(websocket, run_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.host, port=config.port)
