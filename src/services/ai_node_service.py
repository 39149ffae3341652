"""
AI Node Service
Executes ai_node actions: builds the prompt for the configured operation, calls the AI provider
with the engine's retry policy and maps the answer to variable writes and outbound messages.
"""
import json
from typing import Dict, Any, Optional, Tuple
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, RetryError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.interpolation_utils import interpolate_variables

# Exceptions
from exceptions.flow_exception import ExternalCallException

# Models
from models.flow_data import AiNodeActionConfig
from models.execution_context import ExecutionContext
from models.executor_result import ExecutorResult, OutboundMessage

# Services
from services.clients.ai_client import AiClient, AiCompletion

DEFAULT_TEMPERATURE = 0.7

# Operations whose answer is sent to the user unless sendAsMessage says otherwise
SEND_AS_MESSAGE_BY_DEFAULT = ("generate_response", "generate_content", "custom")

DEFAULT_CLASSIFICATION_CATEGORIES = ["sales", "support", "appointment", "general", "handoff"]

SYSTEM_PROMPTS = {
    "generate_response": (
        "You are a helpful assistant replying to a customer in a Facebook Messenger or Instagram "
        "Direct conversation on behalf of a business. Keep replies short, friendly and conversational."
    ),
    "generate_content": (
        "You are a copywriter for a business. Write the requested content in a clear, engaging tone "
        "suitable for a chat message. Return only the content."
    ),
    "extract_data": (
        "You extract structured data from a customer's message. Only use information present in the "
        "message. Use null for fields that are not mentioned."
    ),
    "classify_intent": (
        "You are an intent classifier for a business chatbot. Classify the user's message into exactly "
        "one of the allowed categories and give your confidence between 0 and 1."
    ),
    "analyze_sentiment": (
        "You analyze the sentiment of a customer's message. Classify it as positive, neutral or negative "
        "and give a score between -1 (very negative) and 1 (very positive)."
    ),
    "summarize": (
        "You summarize text. Return a concise summary that keeps the key facts. Do not add information."
    ),
    "translate": (
        "You are a professional translator. Preserve the original tone and meaning. Keep placeholders "
        "like {{name}}, markdown and emojis unchanged. Return only the translated text without explanations."
    ),
    "custom": "You are a helpful assistant.",
}

JSON_SCHEMA_TYPES = {
    "string": "string",
    "number": "number",
    "boolean": "boolean",
    "array": "array",
}


class AiNodeService:
    """
    Service for executing ai_node actions.
    """

    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils, ai_client: AiClient):
        self.log_util = log_util
        self.ai_client = ai_client
        self.retry_count = environment_utils.get_env_variable("AI_RETRY_COUNT")
        backoff_seconds = environment_utils.get_env_variable("AI_RETRY_BACKOFF_SECONDS")
        self.retry_wait = wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=backoff_seconds * 8)

    async def execute(self, config: AiNodeActionConfig, ctx: ExecutionContext) -> ExecutorResult:
        """
        Execute an ai_node action.

        Args:
            config: AiNodeActionConfig of the action
            ctx: ExecutionContext of the current step

        Returns:
            ExecutorResult with the answer written to outputVariable and, if sendAsMessage, one outbound message

        Raises:
            ExternalCallException: AI call still failing after the retry policy
        """
        operation = config.operation
        system_prompt, user_prompt, schema = self.build_prompts(config, ctx)
        temperature = config.temperature if config.temperature is not None else DEFAULT_TEMPERATURE

        self.log_util.info(
            service_name="AiNodeService",
            message=f"[AI_NODE] Running {operation} (model={config.model or 'default'}, temperature={temperature})",
            **ctx.log_context()
        )

        completion = await self._complete_with_retry(
            operation=operation,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            schema=schema,
            model=config.model,
            temperature=temperature,
            ctx=ctx
        )

        output_value, message_text = self.map_completion(operation, completion)

        result = ExecutorResult()
        if config.outputVariable:
            result.variable_writes[config.outputVariable] = output_value

        send_as_message = config.sendAsMessage
        if send_as_message is None:
            send_as_message = operation in SEND_AS_MESSAGE_BY_DEFAULT
        if send_as_message and message_text:
            result.outbound_messages.append(OutboundMessage(text=message_text))

        return result

    async def _complete_with_retry(
        self,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        schema: Optional[Dict[str, Any]],
        model: Optional[str],
        temperature: float,
        ctx: ExecutionContext
    ) -> AiCompletion:
        attempts = self.retry_count + 1
        try:
            async for attempt in AsyncRetrying(stop=stop_after_attempt(attempts), wait=self.retry_wait):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self.log_util.warning(
                            service_name="AiNodeService",
                            message=f"[AI_NODE] Retrying {operation} (attempt {attempt.retry_state.attempt_number}/{attempts})",
                            **ctx.log_context()
                        )
                    return await self.ai_client.complete(
                        operation=operation,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        schema=schema,
                        model=model,
                        temperature=temperature
                    )
        except RetryError as e:
            last_error = e.last_attempt.exception()
            self.log_util.error(
                service_name="AiNodeService",
                message=f"[AI_NODE] {operation} failed after {attempts} attempts: {str(last_error)}",
                **ctx.log_context()
            )
            raise ExternalCallException(
                message=f"AI {operation} failed after {attempts} attempts: {str(last_error)}",
                call_type="ai"
            ) from last_error

    def build_prompts(self, config: AiNodeActionConfig, ctx: ExecutionContext) -> Tuple[str, str, Optional[Dict[str, Any]]]:
        """
        Build (system_prompt, user_prompt, schema) for the operation.
        The user prompt is the interpolated customUserPrompt, or the last user message.
        """
        operation = config.operation
        variables = ctx.variables

        if config.customUserPrompt:
            input_text = interpolate_variables(config.customUserPrompt, variables)
        else:
            input_text = ctx.last_user_message or ""

        system_prompt = SYSTEM_PROMPTS.get(operation, SYSTEM_PROMPTS["custom"])
        if config.customSystemPrompt:
            custom_system_prompt = interpolate_variables(config.customSystemPrompt, variables)
            if operation in ("generate_response", "generate_content", "custom"):
                system_prompt = custom_system_prompt
            else:
                system_prompt = f"{system_prompt}\n\n{custom_system_prompt}"

        schema: Optional[Dict[str, Any]] = None
        user_prompt = input_text

        if operation == "extract_data":
            schema = self.build_extraction_schema(config, ctx)
            user_prompt = f"Message: \"{input_text}\""
        elif operation == "classify_intent":
            categories = config.classificationCategories or DEFAULT_CLASSIFICATION_CATEGORIES
            schema = {
                "type": "object",
                "properties": {
                    "category": {"type": "string", "enum": categories},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": ["category", "confidence"],
            }
            system_prompt = f"{system_prompt}\n\nAllowed categories: {', '.join(categories)}"
            user_prompt = f"User message: \"{input_text}\""
        elif operation == "analyze_sentiment":
            schema = {
                "type": "object",
                "properties": {
                    "sentiment": {"type": "string", "enum": ["positive", "neutral", "negative"]},
                    "score": {"type": "number", "minimum": -1, "maximum": 1},
                },
                "required": ["sentiment", "score"],
            }
            user_prompt = f"User message: \"{input_text}\""
        elif operation == "translate":
            target_language = config.targetLanguage or "English"
            system_prompt = f"{system_prompt}\n\nTranslate the text to {target_language}."
        elif operation == "summarize":
            user_prompt = f"Text to summarize:\n{input_text}"

        return system_prompt, user_prompt, schema

    def build_extraction_schema(self, config: AiNodeActionConfig, ctx: ExecutionContext) -> Dict[str, Any]:
        """
        JSON schema for extract_data, from extractionSchema fields or the raw extractionSchemaJson.
        """
        if config.extractionSchema:
            properties = {}
            required = []
            for field in config.extractionSchema:
                field_schema: Dict[str, Any] = {"type": JSON_SCHEMA_TYPES.get(field.type, "string")}
                if field.type == "array":
                    field_schema["items"] = {"type": "string"}
                if field.description:
                    field_schema["description"] = field.description
                properties[field.name] = field_schema
                if field.required:
                    required.append(field.name)
            return {"type": "object", "properties": properties, "required": required}

        if config.extractionSchemaJson:
            try:
                schema = json.loads(config.extractionSchemaJson)
                if isinstance(schema, dict):
                    return schema
            except ValueError as e:
                self.log_util.warning(
                    service_name="AiNodeService",
                    message=f"[AI_NODE] Invalid extractionSchemaJson, extracting free-form: {str(e)}",
                    **ctx.log_context()
                )

        return {"type": "object"}

    @staticmethod
    def map_completion(operation: str, completion: AiCompletion) -> Tuple[Any, str]:
        """
        Map a completion to (value written to outputVariable, text sent as a message).
        """
        if completion.structured is None:
            return completion.text, completion.text

        structured = completion.structured
        if operation == "classify_intent":
            return structured, str(structured.get("category", ""))
        if operation == "analyze_sentiment":
            return structured, str(structured.get("sentiment", ""))
        return structured, json.dumps(structured)
