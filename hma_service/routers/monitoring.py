"""
Live monitoring routes
POST /api/monitoring/{symbol}/start  - load HMA and begin refreshing
POST /api/monitoring/{symbol}/stop   - cancel refresh, drop cache
POST /api/monitoring/change          - swap the monitored symbol
GET  /api/monitoring                 - all handles
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from hma_service.models.response import ApiResponse
from hma_service.routers.auth import get_current_user
from hma_service.services.container import ServiceContainer, get_container
from hma_service.services.monitor_service import MonitorResult

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


class ChangeRequest(BaseModel):
    old_symbol: str
    new_symbol: str


def _respond(result: MonitorResult) -> ApiResponse:
    if result.success:
        return ApiResponse.ok(data=result.to_dict(), message=f"Monitoring {result.symbol}")
    if result.error is not None:
        # typed failures go through the error handler so they get their status code
        raise result.error
    return ApiResponse.fail(error="cancelled", message=f"Monitoring {result.symbol} was stopped", data=result.to_dict())


@router.get("", response_model=ApiResponse)
async def list_monitors(
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.ok(data=services.monitor.status())


@router.post("/change", response_model=ApiResponse)
async def change_symbol(
    body: ChangeRequest,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return _respond(await services.monitor.change_symbol(body.old_symbol, body.new_symbol))


@router.post("/{symbol}/start", response_model=ApiResponse)
async def start_monitoring(
    symbol: str,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    return _respond(await services.monitor.start_monitoring(symbol))


@router.post("/{symbol}/stop", response_model=ApiResponse)
async def stop_monitoring(
    symbol: str,
    services: ServiceContainer = Depends(get_container),
    current_user: dict = Depends(get_current_user),
):
    stopped = await services.monitor.stop_monitoring(symbol)
    if not stopped:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{symbol} is not being monitored")
    return ApiResponse.ok(message=f"Stopped monitoring {symbol}")
