import json
from typing import Optional, Dict, Any
from openai import AsyncOpenAI
from pydantic import BaseModel

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import ExternalCallException

# Models accepted by the AI node
SUPPORTED_MODELS = ("gpt-4o", "gpt-4o-mini", "gpt-4.1", "gpt-4.1-mini", "gpt-4.1-nano")


class AiCompletion(BaseModel):
    text: str = ""
    structured: Optional[Dict[str, Any]] = None


class AiClient:
    """
    Thin wrapper over the OpenAI chat completions API.
    Retries belong to the caller; every failure propagates.
    """
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.api_key = environment_utils.get_env_variable("OPENAI_API_KEY")
        self.default_model = environment_utils.get_env_variable("AI_DEFAULT_MODEL")
        self.timeout_seconds = environment_utils.get_env_variable("AI_REQUEST_TIMEOUT_SECONDS")
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ExternalCallException(message="OPENAI_API_KEY is not configured", call_type="ai")
            # SDK retries are disabled, the AI node owns the retry policy
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_seconds, max_retries=0)
        return self._client

    def resolve_model(self, model: Optional[str]) -> str:
        if model in SUPPORTED_MODELS:
            return model
        if model:
            self.log_util.warning(
                service_name="AiClient",
                message=f"Unsupported model '{model}', using {self.default_model}"
            )
        return self.default_model

    async def complete(
        self,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7
    ) -> AiCompletion:
        """
        Run one chat completion.

        Args:
            operation: AI node operation (logging only)
            system_prompt: System message
            user_prompt: User message
            schema: JSON schema the answer must follow. Enables JSON mode and fills AiCompletion.structured
            model: Model name, defaults to AI_DEFAULT_MODEL
            temperature: Sampling temperature

        Returns:
            AiCompletion with the raw text and, for structured operations, the parsed object
        """
        client = self._get_client()
        resolved_model = self.resolve_model(model)

        if schema is not None:
            system_prompt = (
                f"{system_prompt}\n\nRespond only with a JSON object matching this JSON schema:\n"
                f"{json.dumps(schema)}"
            )

        request: Dict[str, Any] = {
            "model": resolved_model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if schema is not None:
            request["response_format"] = {"type": "json_object"}  # OpenAI JSON mode

        response = await client.chat.completions.create(**request)
        text = (response.choices[0].message.content or "").strip()

        self.log_util.info(
            service_name="AiClient",
            message=f"[AI] {operation} completed with {resolved_model} ({len(text)} chars)"
        )

        if schema is None:
            return AiCompletion(text=text)

        structured = json.loads(text)
        if not isinstance(structured, dict):
            raise ValueError(f"Expected a JSON object from {operation}, got {type(structured).__name__}")
        return AiCompletion(text=text, structured=structured)
