from dotenv import load_dotenv
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "ORG_ID": os.getenv("ORG_ID", "MetaFlow"),
            "LOKI_URL": os.getenv("LOKI_URL", "http://localhost:3100/loki/api/v1/push"),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", ""),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "meta_flow_db"),
            "META_GRAPH_API_URL": os.getenv("META_GRAPH_API_URL", "https://graph.facebook.com/v21.0"),
            "META_PAGE_ACCESS_TOKEN": os.getenv("META_PAGE_ACCESS_TOKEN", ""),
            "OPENAI_API_KEY": os.getenv("OPENAI_API_KEY", ""),
            "AI_DEFAULT_MODEL": os.getenv("AI_DEFAULT_MODEL", "gpt-4o-mini"),
            "MAX_STEPS_PER_TURN": int(os.getenv("MAX_STEPS_PER_TURN", "100")),
            "HTTP_REQUEST_TIMEOUT_SECONDS": int(os.getenv("HTTP_REQUEST_TIMEOUT_SECONDS", "10")),
            "AI_REQUEST_TIMEOUT_SECONDS": int(os.getenv("AI_REQUEST_TIMEOUT_SECONDS", "30")),
            "AI_RETRY_COUNT": int(os.getenv("AI_RETRY_COUNT", "1")),
            "AI_RETRY_BACKOFF_SECONDS": int(os.getenv("AI_RETRY_BACKOFF_SECONDS", "1")),
            "DELAY_CHECK_INTERVAL_SECONDS": int(os.getenv("DELAY_CHECK_INTERVAL_SECONDS", "20")),
            "DELAY_MAX_ATTEMPTS": int(os.getenv("DELAY_MAX_ATTEMPTS", "3")),
            "MESSAGING_WINDOW_DAYS": int(os.getenv("MESSAGING_WINDOW_DAYS", "7")),
            "FALLBACK_MESSAGE": os.getenv(
                "FALLBACK_MESSAGE",
                "Sorry, something went wrong on our side. A team member will follow up shortly."
            ),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
