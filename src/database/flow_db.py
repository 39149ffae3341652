from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
import urllib.parse
import threading
import asyncio
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
import weakref
from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.time_utils import utcnow

# Exceptions
from exceptions.flow_exception import FlowDBException

# Models
from models.flow_data import FlowData
from models.conversation_state_data import ConversationExecutionState
from models.delay_data import DelayData
from models.team_inbox_data import TeamInboxItemData

"""
Database class for flow operations
"""
class FlowDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB clients keyed by event loop ID: {loop_id: client_data}
        self._clients = {}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _build_connection_uri(self) -> str:
        if self.username and self.password:
            return f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}"
        return f"mongodb://{self.host}:{self.port}/"

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Returns a dictionary with 'client', 'db', and 'collections' for the current event loop.
        Motor clients are bound to the loop they were created on, so the scheduler loop and
        request loop each get their own client.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self._build_connection_uri(),
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            collections = self._initialize_collections_for_client(db)

            client_data = {
                'client': client,
                'db': db,
                'collections': collections,
                'loop': weakref.ref(loop)
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        Returns a dictionary of collections
        """
        return {
            'flows': db.flows,
            'conversation_states': db.conversation_states,
            'delays': db.delays,
            'team_inbox': db.team_inbox
        }

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )

            self._clients.clear()

            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        else:
            self.log_util.error(
                service_name="FlowDB",
                message=f"Error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database error: {str(error)}",
                status_code=500
            )

    @staticmethod
    def _document_id(record_id: str) -> Union[ObjectId, str]:
        """
        Imported flows may carry their editor ID as _id, so only valid hex IDs become ObjectIds.
        """
        if ObjectId.is_valid(record_id):
            return ObjectId(record_id)
        return record_id

    @staticmethod
    def _flow_from_document(flow_dict: Dict[str, Any]) -> FlowData:
        flow_dict["id"] = str(flow_dict.pop("_id"))
        return FlowData.model_validate(flow_dict)

    # Flow CRUD operations
    async def create_flow(self, flow: FlowData) -> Optional[FlowData]:
        """
        Create a new flow.
        If the flow carries an ID (e.g. exported from the editor) it is kept as the document _id.

        Args:
            flow: Validated FlowData object
        """
        client_data = self._get_client_for_current_loop()
        try:
            flow_dict = flow.model_dump(exclude={"id"})
            if flow.id:
                flow_dict["_id"] = self._document_id(flow.id)
            result = await client_data['collections']['flows'].insert_one(flow_dict)
            flow_dict["_id"] = result.inserted_id
            return self._flow_from_document(flow_dict)
        except Exception as e:
            self._handle_db_operation("create_flow", e)

    async def get_flow_by_id(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one({"_id": self._document_id(flow_id)})
            if result is None:
                return None
            return self._flow_from_document(result)
        except Exception as e:
            self._handle_db_operation("get_flow_by_id", e)

    async def get_flows(self, page_id: str) -> List[FlowData]:
        """
        Get all flows of a page, newest first
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find({"pageId": page_id}).sort("createdAt", DESCENDING)
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(self._flow_from_document(flow_dict))
            return flows
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting flows: {str(e)}")
            return []

    async def get_active_flows(self, page_id: str) -> List[FlowData]:
        """
        Get the active flows of a page. These are the trigger matching candidates.
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find({"pageId": page_id, "isActive": True})
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(self._flow_from_document(flow_dict))
            return flows
        except Exception as e:
            self._handle_db_operation("get_active_flows", e)

    async def update_flow(self, flow_id: str, flow: FlowData) -> Optional[FlowData]:
        """
        Replace a flow definition with a new revision.
        Counters and creation time are owned by the stored document and are not overwritten.

        Args:
            flow_id: Flow ID
            flow: Validated FlowData object carrying the new version number
        """
        client_data = self._get_client_for_current_loop()
        try:
            flow_dict = flow.model_dump(exclude={"id", "triggerCount", "completionCount", "createdAt"})
            flow_dict["updatedAt"] = utcnow()
            result = await client_data['collections']['flows'].find_one_and_update(
                {"_id": self._document_id(flow_id)},
                {"$set": flow_dict},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return self._flow_from_document(result)
        except Exception as e:
            self._handle_db_operation("update_flow", e)

    async def update_flow_active(self, flow_id: str, is_active: bool) -> Optional[FlowData]:
        """
        Update only the isActive flag of a flow
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one_and_update(
                {"_id": self._document_id(flow_id)},
                {
                    "$set": {
                        "isActive": is_active,
                        "updatedAt": utcnow()
                    }
                },
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return self._flow_from_document(result)
        except Exception as e:
            self._handle_db_operation("update_flow_active", e)

    async def delete_flow(self, flow_id: str) -> bool:
        """
        Delete a flow
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].delete_one({"_id": self._document_id(flow_id)})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_flow", e)

    async def increment_flow_counter(self, flow_id: str, field: str) -> bool:
        """
        Increment triggerCount or completionCount of a flow.
        """
        if field not in ("triggerCount", "completionCount"):
            raise ValueError(f"Unknown flow counter: {field}")
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].update_one(
                {"_id": self._document_id(flow_id)},
                {"$inc": {field: 1}}
            )
            return result.modified_count > 0
        except Exception as e:
            # Counters are informational; a failed increment must not fail the turn
            self.log_util.error(service_name="FlowDB", message=f"Error incrementing {field}: {str(e)}", flow_id=flow_id)
            return False

    # Conversation state operations
    async def get_conversation_state(self, conversation_id: str) -> Optional[ConversationExecutionState]:
        """
        Get the execution state of a conversation
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['conversation_states'].find_one({"conversationId": conversation_id})
            if result is None:
                return None
            result["id"] = str(result.pop("_id"))
            return ConversationExecutionState.model_validate(result)
        except Exception as e:
            self._handle_db_operation("get_conversation_state", e)

    async def save_conversation_state(self, state: ConversationExecutionState) -> ConversationExecutionState:
        """
        Upsert the execution state of a conversation (keyed by conversationId).
        """
        client_data = self._get_client_for_current_loop()
        try:
            state.updatedAt = utcnow()
            state_dict = state.model_dump(exclude={"id"})
            result = await client_data['collections']['conversation_states'].find_one_and_replace(
                {"conversationId": state.conversationId},
                state_dict,
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            state.id = str(result["_id"])
            return state
        except Exception as e:
            self._handle_db_operation("save_conversation_state", e)

    async def delete_conversation_state(self, conversation_id: str) -> bool:
        """
        Delete the execution state of a conversation
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['conversation_states'].delete_one({"conversationId": conversation_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_conversation_state", e)

    # Delay operations
    async def save_delay(self, delay: DelayData) -> DelayData:
        """
        Save a delay record to the database.

        Args:
            delay: DelayData object to save

        Returns:
            Saved DelayData with ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            delay_dict = delay.model_dump(exclude={"id"})
            result = await client_data['collections']['delays'].insert_one(delay_dict)
            delay_dict["id"] = str(result.inserted_id)
            return DelayData.model_validate(delay_dict)
        except Exception as e:
            self._handle_db_operation("save_delay", e)

    async def get_due_delays(self, now: datetime, limit: int = 100) -> List[DelayData]:
        """
        Get scheduled delays whose resume_at has passed, oldest first.

        Args:
            now: Current time (naive UTC)
            limit: Maximum number of records to return
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['delays'].find({
                "status": "scheduled",
                "resume_at": {"$lte": now}
            }).sort("resume_at", 1).limit(limit)
            results = []
            async for doc in cursor:
                doc["id"] = str(doc.pop("_id"))
                results.append(DelayData.model_validate(doc))
            return results
        except Exception as e:
            self._handle_db_operation("get_due_delays", e)

    async def claim_delay(self, delay_id: str) -> Optional[DelayData]:
        """
        Atomically move a delay from scheduled to processing.

        Returns:
            The claimed delay, or None if another worker claimed or cancelled it first
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].find_one_and_update(
                {"_id": ObjectId(delay_id), "status": "scheduled"},
                {
                    "$set": {"status": "processing", "updated_at": utcnow()},
                    "$inc": {"attempts": 1}
                },
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            result["id"] = str(result.pop("_id"))
            return DelayData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("claim_delay", e)

    async def mark_delay_status(self, delay_id: str, status: str, error: Optional[str] = None) -> bool:
        """
        Set the status of a delay record (fired, cancelled, failed, or back to scheduled).
        """
        client_data = self._get_client_for_current_loop()
        try:
            update_dict: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
            if error is not None:
                update_dict["last_error"] = error
            result = await client_data['collections']['delays'].update_one(
                {"_id": ObjectId(delay_id)},
                {"$set": update_dict}
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("mark_delay_status", e)

    async def cancel_pending_delays(self, conversation_id: str) -> int:
        """
        Cancel every scheduled delay of a conversation.

        Returns:
            Number of cancelled delays
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_many(
                {"conversation_id": conversation_id, "status": "scheduled"},
                {"$set": {"status": "cancelled", "updated_at": utcnow()}}
            )
            return result.modified_count
        except Exception as e:
            self._handle_db_operation("cancel_pending_delays", e)

    async def cancel_pending_delays_for_flow(self, flow_id: str) -> int:
        """
        Cancel every scheduled delay belonging to a flow (used when the flow is deactivated).

        Returns:
            Number of cancelled delays
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_many(
                {"flow_id": flow_id, "status": "scheduled"},
                {"$set": {"status": "cancelled", "updated_at": utcnow()}}
            )
            return result.modified_count
        except Exception as e:
            self._handle_db_operation("cancel_pending_delays_for_flow", e)

    async def get_processing_delays(self) -> List[DelayData]:
        """
        Get delays left in processing (claimed but never resolved)
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['delays'].find({"status": "processing"})
            results = []
            async for doc in cursor:
                doc["id"] = str(doc.pop("_id"))
                results.append(DelayData.model_validate(doc))
            return results
        except Exception as e:
            self._handle_db_operation("get_processing_delays", e)

    # Team inbox operations
    async def upsert_team_inbox_item(self, item: TeamInboxItemData) -> TeamInboxItemData:
        """
        Open (or reopen) the team inbox item of a conversation with the latest handoff details.
        """
        client_data = self._get_client_for_current_loop()
        try:
            now = utcnow()
            update_dict = item.model_dump(exclude={"id", "created_at", "resolved_at"})
            update_dict["status"] = "open"
            update_dict["updated_at"] = now
            result = await client_data['collections']['team_inbox'].find_one_and_update(
                {"conversation_id": item.conversation_id},
                {
                    "$set": update_dict,
                    "$setOnInsert": {"created_at": now},
                    "$unset": {"resolved_at": ""}
                },
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            result["id"] = str(result.pop("_id"))
            return TeamInboxItemData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("upsert_team_inbox_item", e)
