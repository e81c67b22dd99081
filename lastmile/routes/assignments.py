from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from lastmile.dependencies import get_service
from lastmile.lifecycle import OrderLifecycleService

router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.post("/run")
async def run_assignment(service: OrderLifecycleService = Depends(get_service)) -> JSONResponse:
    """
    Group every Slot Selected order by pincode and assign drivers round robin.
    With no drivers the run still succeeds; groups report driverCount 0.
    """
    result = await service.run_assignment()
    return JSONResponse(status_code=200, content=result.to_response())
