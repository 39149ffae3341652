from typing import List, Dict, Any
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Services
from services.delay_scheduler_service import DelaySchedulerService

# Models
from models.flow_data import FlowData

# Exceptions
from exceptions.flow_exception import (
    FlowException,
    FlowServiceException,
    FlowNotFoundException,
    FlowValidationException,
)

class FlowService:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils, flow_db: FlowDB,
                 delay_scheduler_service: DelaySchedulerService):
        self.log_util = log_util
        self.environment_utils = environment_utils
        self.flow_db = flow_db
        self.delay_scheduler_service = delay_scheduler_service

    def parse_flow(self, flow_data: Dict[str, Any]) -> FlowData:
        """
        Parse and validate a FlowDefinition JSON document.

        Raises:
            FlowValidationException: listing every schema and graph problem found
        """
        try:
            flow = FlowData.model_validate(flow_data)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise FlowValidationException(
                message=f"Flow definition does not match the schema: {'; '.join(errors)}",
                errors=errors
            )
        return flow.ensure_valid()

    def validate_flow(self, flow_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate a flow definition without saving it
        """
        try:
            self.parse_flow(flow_data)
            return {"valid": True, "errors": []}
        except FlowValidationException as e:
            return {"valid": False, "errors": e.errors}

    async def create_flow(self, flow_data: Dict[str, Any]) -> FlowData:
        """
        Create a new flow. The definition is validated before it is stored.
        """
        try:
            flow = self.parse_flow(flow_data)
            flow.version = 1
            flow.triggerCount = 0
            flow.completionCount = 0

            saved_flow = await self.flow_db.create_flow(flow)
            if saved_flow is None:
                raise FlowServiceException(message="Failed to create flow")

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{saved_flow.name}' created for page {saved_flow.pageId}",
                flow_id=saved_flow.id
            )
            return saved_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error creating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error creating flow: {str(e)}")

    async def get_flows_list(self, page_id: str) -> List[FlowData]:
        """
        Get list of flows for a page
        """
        try:
            flows = await self.flow_db.get_flows(page_id=page_id)
            if flows is None:
                return []
            return flows
        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error getting flows list: {str(e)}"
            )
            raise FlowServiceException(message=f"Error getting flows list: {str(e)}")

    async def get_flow_detail(self, flow_id: str) -> FlowData:
        """
        Get flow detail by ID
        """
        flow = await self.flow_db.get_flow_by_id(flow_id)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        return flow

    async def update_flow(self, flow_id: str, flow_data: Dict[str, Any]) -> FlowData:
        """
        Publish a new revision of a flow.
        The version is incremented; turns already running keep the revision they loaded.
        """
        try:
            existing_flow = await self.get_flow_detail(flow_id)

            flow = self.parse_flow(flow_data)
            flow.id = flow_id
            if flow.pageId is None:
                flow.pageId = existing_flow.pageId
            flow.version = existing_flow.version + 1

            updated_flow = await self.flow_db.update_flow(flow_id, flow)
            if updated_flow is None:
                raise FlowNotFoundException(message=f"Flow {flow_id} not found")

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{updated_flow.name}' updated to version {updated_flow.version}",
                flow_id=flow_id
            )

            if existing_flow.isActive and not updated_flow.isActive:
                await self.delay_scheduler_service.cancel_pending_delays_for_flow(flow_id)

            return updated_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error updating flow: {str(e)}",
                flow_id=flow_id
            )
            raise FlowServiceException(message=f"Error updating flow: {str(e)}")

    async def update_flow_active(self, flow_id: str, is_active: bool) -> FlowData:
        """
        Activate or deactivate a flow. Deactivation cancels the flow's pending delays.
        """
        flow = await self.flow_db.update_flow_active(flow_id, is_active)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")

        self.log_util.info(
            service_name="FlowService",
            message=f"Flow '{flow.name}' {'activated' if is_active else 'deactivated'}",
            flow_id=flow_id
        )

        if not is_active:
            await self.delay_scheduler_service.cancel_pending_delays_for_flow(flow_id)
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        """
        Delete a flow and cancel its pending delays
        """
        deleted = await self.flow_db.delete_flow(flow_id)
        if not deleted:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        await self.delay_scheduler_service.cancel_pending_delays_for_flow(flow_id)
        self.log_util.info(
            service_name="FlowService",
            message="Flow deleted",
            flow_id=flow_id
        )
        return True
