import logging
from logging_loki import LokiHandler
from dotenv import load_dotenv
import os
from typing import Optional, Dict


class NonEmptyTagsFilter(logging.Filter):
    def filter(self, record):
        # Check if the record has 'tags' attribute
        tags = getattr(record, 'tags', None)
        if tags is None:
            return True  # No tags to check, allow the record
        # Exclude the record if any tag value is empty or None
        for key, value in tags.items():
            if value is None or value == '':
                return False
        return True


class LogUtil:
    def __init__(self):

        # Load environment variables
        load_dotenv()

        # Initialize Loki handler
        self.handler = LokiHandler(
            url=os.getenv("LOKI_URL", "http://localhost:3100/loki/api/v1/push"),
            tags={"application": "meta_flow_service", "environment": os.getenv("APP_ENV", "production"), "org_id": os.getenv("ORG_ID", "MetaFlow")},
            version="1"
        )
        self.handler.addFilter(NonEmptyTagsFilter())
        self.logger = logging.getLogger("meta_flow_service")
        self.logger.setLevel(logging.INFO)
        if not self.logger.handlers:
            self.logger.addHandler(self.handler)

            # Add console handler for local terminal output
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_formatter = logging.Formatter('%(asctime)s - %(name)s - [%(levelname)s] - %(message)s')
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        # Quiet noisy client libraries
        for noisy_logger in ("pymongo", "motor", "httpx", "httpcore", "openai"):
            logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    def _build_tags(
        self,
        service_name: str,
        flow_id: Optional[str] = None,
        node_id: Optional[str] = None,
        conversation_id: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Build Loki tags for a record. Only non-empty values are attached,
        otherwise NonEmptyTagsFilter would drop the whole record.
        """
        tags = {"service_name": service_name}
        for key, value in (("flow_id", flow_id), ("node_id", node_id), ("conversation_id", conversation_id)):
            if value:
                tags[key] = str(value)
        return tags

    def _format(self, message: str, tags: Dict[str, str]) -> str:
        context = " ".join(f"{key}={value}" for key, value in tags.items() if key != "service_name")
        return f"{message} [{context}]" if context else message

    def info(self, service_name: str, message: str, **context):
        tags = self._build_tags(service_name, **context)
        self.logger.info(self._format(message, tags), extra={"tags": tags})

    def error(self, service_name: str, message: str, **context):
        tags = self._build_tags(service_name, **context)
        self.logger.error(self._format(message, tags), extra={"tags": tags})

    def warning(self, service_name: str, message: str, **context):
        tags = self._build_tags(service_name, **context)
        self.logger.warning(self._format(message, tags), extra={"tags": tags})

    def debug(self, service_name: str, message: str, **context):
        tags = self._build_tags(service_name, **context)
        self.logger.debug(self._format(message, tags), extra={"tags": tags})
