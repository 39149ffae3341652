from fastapi import APIRouter, Query
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException

def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    def to_http_exception(operation: str, e: Exception) -> HTTPException:
        log_util.error(service_name="FlowAPI", message=f"Error {operation}: {e}")
        if isinstance(e, FlowValidationException):
            return HTTPException(status_code=e.status_code, detail={"message": e.message, "errors": e.errors})
        if isinstance(e, FlowException):
            return HTTPException(status_code=e.status_code, detail=e.message)
        return HTTPException(status_code=500, detail="Internal server error")

    @router.post("/create")
    async def create_flow(flow_data: dict):
        try:
            return await flow_service.create_flow(flow_data=flow_data)
        except Exception as e:
            raise to_http_exception("creating flow", e)

    @router.get("/list")
    async def get_flows_list(page_id: str = Query(..., description="Meta page ID")):
        try:
            return await flow_service.get_flows_list(page_id=page_id)
        except Exception as e:
            raise to_http_exception("getting flows list", e)

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(flow_id: str):
        try:
            return await flow_service.get_flow_detail(flow_id=flow_id)
        except Exception as e:
            raise to_http_exception("getting flow detail", e)

    @router.put("/update/{flow_id}")
    async def update_flow(flow_id: str, flow_data: dict):
        try:
            return await flow_service.update_flow(flow_id=flow_id, flow_data=flow_data)
        except Exception as e:
            raise to_http_exception("updating flow", e)

    @router.post("/status/{flow_id}")
    async def update_flow_status(flow_id: str, status_data: dict):
        """
        Activate or deactivate a flow. Deactivation cancels the flow's pending delays.

        Request body:
        {
            "isActive": true | false
        }
        """
        is_active = status_data.get("isActive")
        if not isinstance(is_active, bool):
            raise HTTPException(status_code=400, detail="isActive (boolean) is required in request body")
        try:
            return await flow_service.update_flow_active(flow_id=flow_id, is_active=is_active)
        except Exception as e:
            raise to_http_exception("updating flow status", e)

    @router.post("/validate")
    async def validate_flow(flow_data: dict):
        """
        Validate a flow definition without saving it. Returns {"valid": bool, "errors": [...]}.
        """
        return flow_service.validate_flow(flow_data=flow_data)

    @router.delete("/delete/{flow_id}")
    async def delete_flow(flow_id: str):
        try:
            await flow_service.delete_flow(flow_id=flow_id)
            return {"status": "success", "message": "Flow deleted", "flow_id": flow_id}
        except Exception as e:
            raise to_http_exception("deleting flow", e)

    return router
