import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

router = APIRouter()

logger = logging.getLogger("modelmcp.health")

HEALTH_RESPONSE = {"ok": True, "status": "ok"}


@router.get(
    "/health",
    tags=["Monitoring"],
    summary="Health check endpoint",
    include_in_schema=False,
)
async def health_check():
    logger.debug("Health probe received")
    return JSONResponse(content=HEALTH_RESPONSE, status_code=status.HTTP_200_OK)


@router.get(
    "/mcp/health",
    tags=["Monitoring"],
    summary="MCP endpoint health with catalog and session counts",
)
async def mcp_health(request: Request):
    provider = request.app.state.catalog_provider
    manager = request.app.state.session_manager
    catalog = provider.catalog
    content = dict(HEALTH_RESPONSE)
    content["catalog"] = (
        {
            "tools": len(catalog.tools),
            "resources": len(catalog.resources) + len(catalog.resource_templates),
            "prompts": len(catalog.prompts),
        }
        if catalog is not None
        else None
    )
    content["sessions"] = len(manager.sessions)
    return JSONResponse(content=content, status_code=status.HTTP_200_OK)
