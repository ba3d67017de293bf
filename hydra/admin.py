"""Admin endpoints for credential pool observability."""

from typing import Dict

from fastapi import APIRouter, HTTPException, Request

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/status")
async def get_all_status(request: Request) -> Dict[str, object]:
    """Get aggregate health of every provider pool."""
    vault = request.app.state.vault
    return {"providers": [status.to_dict() for status in vault.get_all_statuses()]}


@admin_router.get("/status/{provider}")
async def get_provider_status(request: Request, provider: str) -> Dict[str, object]:
    """Get per-key detail for one provider."""
    vault = request.app.state.vault
    keys = vault.get_key_status(provider.upper())
    if keys is None:
        raise HTTPException(status_code=404, detail=f"Provider {provider} not found")
    return {"id": provider.upper(), "keys": keys}


@admin_router.post("/refresh")
async def refresh_pools(request: Request) -> Dict[str, object]:
    """Rescan the environment and rebuild every key pool."""
    vault = request.app.state.vault
    vault.refresh()
    return {
        "message": "Key pools refreshed",
        "providers": [status.to_dict() for status in vault.get_all_statuses()],
    }
