from types import SimpleNamespace

import pytest
from tenacity import wait_none

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.conversation_lock import ConversationLockRegistry

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

from tests.fakes import FakeFlowDB, FakeMessagingClient, FakeAiClient, FakeHttpFetchClient


@pytest.fixture
def log_util(mocker):
    return mocker.MagicMock(spec=LogUtil)


@pytest.fixture
def environment_utils(log_util):
    environment_utils = EnvironmentUtils(log_util=log_util)
    environment_utils.env_variables.update({
        "META_GRAPH_API_URL": "https://graph.test/v21.0",
        "META_PAGE_ACCESS_TOKEN": "test-token",
        "OPENAI_API_KEY": "",
        "AI_DEFAULT_MODEL": "gpt-4o-mini",
        "MAX_STEPS_PER_TURN": 100,
        "HTTP_REQUEST_TIMEOUT_SECONDS": 10,
        "AI_RETRY_COUNT": 1,
        "AI_RETRY_BACKOFF_SECONDS": 1,
        "MESSAGING_WINDOW_DAYS": 7,
        "FALLBACK_MESSAGE": "Sorry, something went wrong.",
    })
    return environment_utils


@pytest.fixture
def flow_db():
    return FakeFlowDB()


@pytest.fixture
def messaging_client():
    return FakeMessagingClient()


@pytest.fixture
def ai_client():
    return FakeAiClient()


@pytest.fixture
def http_fetch_client():
    return FakeHttpFetchClient()


@pytest.fixture
def engine(log_util, environment_utils, flow_db, messaging_client, ai_client, http_fetch_client):
    """
    Services wired the way main.py wires them, over in-memory collaborators.
    """
    delay_scheduler_service = DelaySchedulerService(log_util=log_util, flow_db=flow_db)
    ai_node_service = AiNodeService(log_util=log_util, environment_utils=environment_utils, ai_client=ai_client)
    ai_node_service.retry_wait = wait_none()
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
    condition_evaluation_service = ConditionEvaluationService(log_util=log_util)
    trigger_identification_service = TriggerIdentificationService(log_util=log_util, flow_db=flow_db)
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
    delay_scheduler_service.set_conversation_service(conversation_service)
    flow_service = FlowService(
        log_util=log_util,
        environment_utils=environment_utils,
        flow_db=flow_db,
        delay_scheduler_service=delay_scheduler_service
    )
    return SimpleNamespace(
        flow_db=flow_db,
        messaging_client=messaging_client,
        ai_client=ai_client,
        http_fetch_client=http_fetch_client,
        delay_scheduler_service=delay_scheduler_service,
        ai_node_service=ai_node_service,
        action_executor_service=action_executor_service,
        trigger_identification_service=trigger_identification_service,
        flow_execution_service=flow_execution_service,
        handoff_service=handoff_service,
        conversation_service=conversation_service,
        flow_service=flow_service,
    )

