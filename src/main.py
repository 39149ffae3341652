import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.conversation_lock import ConversationLockRegistry

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import FlowException

# Clients
from services.clients.messaging_client import MessagingClient
from services.clients.ai_client import AiClient
from services.clients.http_fetch_client import HttpFetchClient

# Services
from services.delay_scheduler_service import DelaySchedulerService
from services.flow_service import FlowService
from services.condition_evaluation_service import ConditionEvaluationService
from services.trigger_identification_service import TriggerIdentificationService
from services.ai_node_service import AiNodeService
from services.http_request_service import HttpRequestService
from services.action_executor_service import ActionExecutorService
from services.flow_execution_service import FlowExecutionService
from services.handoff_service import HandoffService
from services.conversation_service import ConversationService

# APIs
from apis.flow_api import create_flow_api
from apis.inbound_message_api import create_inbound_message_api
from apis.conversation_api import create_conversation_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

# Clients
messaging_client = MessagingClient(log_util=log_util, environment_utils=environment_utils)
ai_client = AiClient(log_util=log_util, environment_utils=environment_utils)
http_fetch_client = HttpFetchClient()

# Services
delay_scheduler_service = DelaySchedulerService(
    log_util=log_util,
    flow_db=flow_db,
    check_interval_seconds=environment_utils.get_env_variable("DELAY_CHECK_INTERVAL_SECONDS"),
    max_attempts=environment_utils.get_env_variable("DELAY_MAX_ATTEMPTS")
)

flow_service = FlowService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db,
    delay_scheduler_service=delay_scheduler_service
)

condition_evaluation_service = ConditionEvaluationService(log_util=log_util)

trigger_identification_service = TriggerIdentificationService(
    log_util=log_util,
    flow_db=flow_db
)

ai_node_service = AiNodeService(
    log_util=log_util,
    environment_utils=environment_utils,
    ai_client=ai_client
)

http_request_service = HttpRequestService(
    log_util=log_util,
    environment_utils=environment_utils,
    http_fetch_client=http_fetch_client
)

action_executor_service = ActionExecutorService(
    log_util=log_util,
    ai_node_service=ai_node_service,
    http_request_service=http_request_service
)

flow_execution_service = FlowExecutionService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db,
    action_executor_service=action_executor_service,
    condition_evaluation_service=condition_evaluation_service,
    delay_scheduler_service=delay_scheduler_service
)

handoff_service = HandoffService(log_util=log_util, flow_db=flow_db)

conversation_service = ConversationService(
    log_util=log_util,
    environment_utils=environment_utils,
    flow_db=flow_db,
    trigger_identification_service=trigger_identification_service,
    flow_execution_service=flow_execution_service,
    delay_scheduler_service=delay_scheduler_service,
    handoff_service=handoff_service,
    messaging_client=messaging_client,
    lock_registry=ConversationLockRegistry()
)

# Set conversation service in delay scheduler (resumes elapsed delays)
delay_scheduler_service.set_conversation_service(conversation_service)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_util.info(service_name="MetaFlowService", message="Application startup complete")

    # Start delay scheduler (reconciles delays left in processing by a crash)
    await delay_scheduler_service.start(reconcile=True)
    log_util.info(service_name="MetaFlowService", message="Delay scheduler started")

    yield

    # Shutdown
    await delay_scheduler_service.stop()
    log_util.info(service_name="MetaFlowService", message="Delay scheduler stopped")

    flow_db.close()
    log_util.info(service_name="MetaFlowService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="meta flow service",
    description="Conversation flow automation for Messenger and Instagram",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Flow management APIs
flow_api_router = create_flow_api(
    log_util=log_util,
    flow_service=flow_service
)
app.include_router(flow_api_router)

# Inbound message API (receives messages from the Messenger/Instagram webhook receiver)
inbound_message_router = create_inbound_message_api(
    log_util=log_util,
    conversation_service=conversation_service
)
app.include_router(inbound_message_router)

# Conversation state APIs
conversation_router = create_conversation_api(
    log_util=log_util,
    conversation_service=conversation_service
)
app.include_router(conversation_router)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "meta_flow_service"}

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="MetaFlowService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Flow exceptions that escaped a router
@app.exception_handler(FlowException)
async def flow_exception_handler(request: Request, exc: FlowException):
    log_util.error(service_name="MetaFlowService", message=f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions (no stack traces in responses)
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="MetaFlowService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
