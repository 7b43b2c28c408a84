"""FastAPI REST API exposing the controller's health and observed state."""

import asyncio
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .logging_config import get_logger, log_api_request, log_api_response, log_function_entry, log_function_exit
from .manager import ControllerManager
from .models import CertificateInfo, CertificateState, ControllerConfig, ControllerStatus, DNSRecord

logger = get_logger(__name__)

app = FastAPI(
    title="glbc",
    description="Global load balancer controller: hostnames, DNS records and certificates for federated ingresses",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests and responses."""
    start_time = asyncio.get_event_loop().time()

    log_api_request(logger, request.method, str(request.url.path),
                    client_ip=request.client.host if request.client else "unknown",
                    user_agent=request.headers.get("user-agent", "unknown"))

    response = await call_next(request)

    duration = asyncio.get_event_loop().time() - start_time
    log_api_response(logger, request.method, str(request.url.path),
                     response.status_code,
                     duration_ms=round(duration * 1000, 2))

    return response

# Global controller manager instance
manager: Optional[ControllerManager] = None
_manager_task: Optional[asyncio.Task] = None


async def get_manager() -> ControllerManager:
    """Get the global ControllerManager instance."""
    if manager is None:
        raise HTTPException(status_code=503, detail="Controller manager not initialized")
    return manager


def initialize_manager(config: ControllerConfig, **kwargs) -> ControllerManager:
    """Initialize the global ControllerManager instance."""
    log_function_entry(logger, "initialize_manager",
                       mode=config.mode.value,
                       domain=config.domain)
    global manager
    manager = ControllerManager(config, **kwargs)
    logger.info("Controller manager initialized",
                mode=config.mode.value,
                domain=config.domain,
                tls_enabled=config.tls_enabled,
                dns_provider=config.dns_provider,
                workers=config.workers)
    log_function_exit(logger, "initialize_manager", status="success")
    return manager


@app.get("/health")
async def health_check():
    """Liveness endpoint."""
    return {"status": "healthy", "service": "glbc"}


@app.get("/ready")
async def readiness_check():
    """Ready once caches have synced and workers are running."""
    mgr = await get_manager()
    if not mgr.running:
        raise HTTPException(status_code=503, detail="Controllers not running")
    return {"status": "ready", "mode": mgr.config.mode.value}


@app.get("/records", response_model=List[DNSRecord])
async def get_records(
    namespace: Optional[str] = Query(None, description="Filter by namespace"),
):
    """DNS records currently programmed by the DNS provider."""
    mgr = await get_manager()
    records = mgr.programmed_records()
    if namespace:
        records = [r for r in records if r.namespace == namespace]
    logger.debug("Returning records", count=len(records), namespace=namespace)
    return records


@app.get("/records/{dns_name}", response_model=DNSRecord)
async def get_record(dns_name: str):
    """Get the programmed record for one hostname."""
    mgr = await get_manager()
    for record in mgr.programmed_records():
        if record.dns_name == dns_name:
            return record
    raise HTTPException(status_code=404, detail=f"Record {dns_name} not found")


@app.get("/certificates", response_model=List[CertificateInfo])
async def get_certificates(
    state: Optional[CertificateState] = Query(None, description="Filter by certificate state"),
):
    """Certificate state per global hostname."""
    mgr = await get_manager()
    certificates = mgr.certificates.certificates()
    if state is not None:
        certificates = [c for c in certificates if c.state == state]
    return certificates


@app.get("/controllers", response_model=List[ControllerStatus])
async def get_controllers():
    """Queue depth and counters for each controller."""
    mgr = await get_manager()
    return mgr.controller_status()


@app.get("/config")
async def get_config():
    """Get current controller configuration (sanitized)."""
    mgr = await get_manager()
    return mgr.sanitized_config()


def _on_manager_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Controller manager exited with error", error=str(exc))


@app.on_event("startup")
async def startup_event():
    """Initialize the manager and start its controllers in the background.

    A failed initialization (cluster connection or certificate provider)
    aborts startup.
    """
    global _manager_task
    if manager:
        await manager.initialize()
        _manager_task = asyncio.create_task(manager.run())
        _manager_task.add_done_callback(_on_manager_exit)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the controllers and wait for workers to drain."""
    global _manager_task
    logger.info("Shutting down glbc API")
    if manager:
        manager.stop()
    if _manager_task is not None:
        try:
            await _manager_task
        except Exception as e:
            logger.warning("Controller manager stopped with error", error=str(e))
        _manager_task = None
