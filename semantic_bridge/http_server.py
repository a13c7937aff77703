"""Health and stats HTTP surface on the bridge port.

Container health checks poll GET /health. The app is served by hypercorn
from cli.SemanticBridge.run(), on the same event loop as the relay link.
"""

from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__

if TYPE_CHECKING:
    from .cli import SemanticBridge


class HealthResponse(BaseModel):
    status: str = "ok"
    relay_state: str
    backend_available: bool


class StatsResponse(BaseModel):
    queueLength: int
    cacheSize: int
    cachedResponses: list[str] = Field(default_factory=list)


def create_app(bridge: "SemanticBridge") -> FastAPI:
    """Build the FastAPI app bound to a bridge instance."""
    app = FastAPI(
        title="Semantic Bridge",
        description="Bridge between the federation relay and a local LLM",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness: 200 while the process is up, whatever the link state."""
        return HealthResponse(
            relay_state=bridge.link.state.value,
            backend_available=await bridge.client.is_available(),
        )

    @app.get("/stats", response_model=StatsResponse)
    async def stats():
        return StatsResponse(**bridge.get_stats())

    @app.get("/responses/{request_id}")
    async def get_response(request_id: str) -> dict[str, Any]:
        response = bridge.get_response(request_id)
        if response is None:
            raise HTTPException(status_code=404, detail=f"No cached response for {request_id}")
        return {"type": "semantic_response", **response.to_message()}

    return app
