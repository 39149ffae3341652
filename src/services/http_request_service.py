"""
HTTP Request Service
Executes http_request actions. External outages never stall a conversation: every failure
is logged and the flow continues with an empty result.
"""
import json
from typing import Any, Dict
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.interpolation_utils import interpolate_variables, interpolate_object_variables

# Models
from models.flow_data import HttpRequestActionConfig
from models.execution_context import ExecutionContext
from models.executor_result import ExecutorResult

# Services
from services.clients.http_fetch_client import HttpFetchClient


class HttpRequestService:
    """
    Service for executing http_request actions.
    """

    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils, http_fetch_client: HttpFetchClient):
        self.log_util = log_util
        self.http_fetch_client = http_fetch_client
        self.timeout_seconds = environment_utils.get_env_variable("HTTP_REQUEST_TIMEOUT_SECONDS")

    async def execute(self, config: HttpRequestActionConfig, ctx: ExecutionContext) -> ExecutorResult:
        """
        Execute an http_request action.

        Args:
            config: HttpRequestActionConfig of the action
            ctx: ExecutionContext of the current step

        Returns:
            ExecutorResult with the parsed response in responseVariable (empty dict on failure)
        """
        url = interpolate_variables(config.url, ctx.variables)
        headers = interpolate_object_variables(config.headers, ctx.variables)
        body = self.build_body(config.body, ctx.variables)

        self.log_util.info(
            service_name="HttpRequestService",
            message=f"[HTTP_REQUEST] {config.method} {url}",
            **ctx.log_context()
        )

        result = ExecutorResult()
        response_value: Any = {}
        try:
            response = await self.http_fetch_client.fetch(
                method=config.method,
                url=url,
                headers=headers,
                body=body,
                timeout=self.timeout_seconds
            )
            if response.ok:
                response_value = response.body
                self.log_util.info(
                    service_name="HttpRequestService",
                    message=f"[HTTP_REQUEST] {config.method} {url} returned {response.status}",
                    **ctx.log_context()
                )
            else:
                self.log_util.error(
                    service_name="HttpRequestService",
                    message=f"[HTTP_REQUEST] {config.method} {url} returned {response.status}, continuing with empty result",
                    **ctx.log_context()
                )
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"[HTTP_REQUEST] {config.method} {url} timed out after {self.timeout_seconds}s, continuing with empty result",
                **ctx.log_context()
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"[HTTP_REQUEST] {config.method} {url} failed: {str(e)}, continuing with empty result",
                **ctx.log_context()
            )

        if config.responseVariable:
            result.variable_writes[config.responseVariable] = response_value
        return result

    @staticmethod
    def build_body(body: Any, variables: Dict[str, Any]) -> Any:
        """
        Interpolate the body. A string body that is valid JSON after interpolation is sent as JSON.
        """
        if body is None:
            return None
        if isinstance(body, str):
            rendered = interpolate_variables(body, variables)
            if not rendered.strip():
                return None
            try:
                return json.loads(rendered)
            except ValueError:
                return rendered
        return interpolate_object_variables(body, variables)
