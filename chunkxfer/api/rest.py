"""
Status API for a Transfer Server

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Async, auto-docs, pydantic models
2. Flask - Simple, but sync-focused
3. aiohttp - Async, but less features

Decision: FastAPI
- Runs on the same event loop as the transfer server
- Automatic OpenAPI documentation at /docs
- Pydantic response models

API Design:
- Read-only views of live sessions and persisted records
- DELETE /transfers/{id} is the one write: cooperative cancellation
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .. import __version__

logger = logging.getLogger(__name__)

# Global reference to the transfer server (set when app is created)
_server = None


# === Pydantic Models ===

class ServerStatus(BaseModel):
    """Server status response."""
    running: bool
    address: Optional[str] = None
    active_transfers: int
    upload_slots: int
    transfers_completed: int
    transfers_failed: int
    transfers_cancelled: int
    bytes_received: int


class TransferInfo(BaseModel):
    """A live (or lingering) session."""
    transfer_id: str
    role: str
    file_name: str
    size: int
    phase: str
    chunks_acknowledged: int
    total_chunks: int
    progress_percent: float
    resume_cursor: int
    reason: str = ""
    detail: str = ""


class OutcomeInfo(BaseModel):
    """How a recent session ended."""
    transfer_id: str
    file_name: str
    phase: str
    reason: str = ""
    detail: str = ""
    chunks_acknowledged: int
    total_chunks: int
    bytes_transferred: int
    resume_cursor: int
    duration_s: float


class TransferRecord(BaseModel):
    """A persisted resume record."""
    transfer_id: str
    file_name: str
    size: int
    total_chunks: int
    status: str
    resume_cursor: int
    detail: str = ""
    final_path: str
    started_at: float
    updated_at: float


class CancelResult(BaseModel):
    transfer_id: str
    cancelled: bool


# === API Creation ===

def create_app(server=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        server: TransferServer instance to report on

    Returns:
        FastAPI application
    """
    global _server
    _server = server

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Status API starting...")
        yield
        logger.info("Status API stopping...")

    app = FastAPI(
        title="chunkxfer Status API",
        description="Live and persisted state of a chunked transfer server",
        version=__version__,
        lifespan=lifespan,
    )

    def require_server():
        if not _server or not _server.is_running:
            raise HTTPException(status_code=503, detail="Server not running")
        return _server

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "chunkxfer",
            "version": __version__,
            "status": "running" if _server and _server.is_running else "not running",
        }

    @app.get("/status", response_model=ServerStatus, tags=["Server"])
    async def get_status():
        """Get server status."""
        server = require_server()
        stats = server.get_stats()
        address = stats['address']

        return ServerStatus(
            running=server.is_running,
            address=f"{address[0]}:{address[1]}" if address else None,
            active_transfers=stats['active_transfers'],
            upload_slots=stats['upload_slots'],
            transfers_completed=stats['transfers_completed'],
            transfers_failed=stats['transfers_failed'],
            transfers_cancelled=stats['transfers_cancelled'],
            bytes_received=stats['bytes_received'],
        )

    @app.get("/stats", tags=["Server"])
    async def get_stats():
        """Get detailed server statistics."""
        return require_server().get_stats()

    # === Transfers ===

    @app.get("/transfers", response_model=List[TransferInfo], tags=["Transfers"])
    async def list_transfers():
        """List registered sessions."""
        server = require_server()
        return [TransferInfo(**s) for s in server.snapshot()]

    @app.get("/transfers/{transfer_id}", response_model=TransferInfo, tags=["Transfers"])
    async def get_transfer(transfer_id: str):
        """Get one session."""
        session = require_server().get_session(transfer_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Transfer not found")
        return TransferInfo(**session.to_dict())

    @app.delete("/transfers/{transfer_id}", response_model=CancelResult, tags=["Transfers"])
    async def cancel_transfer(transfer_id: str):
        """Cancel a live transfer. The staging file is kept for resumption."""
        server = require_server()
        if server.get_session(transfer_id) is None:
            raise HTTPException(status_code=404, detail="Transfer not found")

        cancelled = server.cancel(transfer_id)
        logger.info(f"Cancel request for {transfer_id[:12]}: "
                    f"{'accepted' if cancelled else 'already finished'}")
        return CancelResult(transfer_id=transfer_id, cancelled=cancelled)

    @app.get("/outcomes", response_model=List[OutcomeInfo], tags=["Transfers"])
    async def list_outcomes():
        """Recently finished sessions, newest first."""
        server = require_server()
        return [OutcomeInfo(**o.to_dict()) for o in reversed(server.recent_outcomes)]

    @app.get("/history", response_model=List[TransferRecord], tags=["Transfers"])
    async def history(status: Optional[str] = None):
        """Persisted transfer records, optionally filtered by status."""
        server = require_server()
        records = await server.history(status)
        return [TransferRecord(**r) for r in records]

    return app


async def run_api_server(server, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the status API.

    Args:
        server: TransferServer instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(server)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    api = uvicorn.Server(config)
    await api.serve()
