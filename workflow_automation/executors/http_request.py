"""HttpRequest node: one HTTP call through requests."""

from typing import Any, Dict, Optional

import requests

from ..core.context import CancellationToken, ExecutionContext
from ..core.exceptions import NodeExecutionError
from ..models.configs import BODY_METHODS, HttpRequestConfig
from ..models.core import NodeType
from .base import NodeExecutor


class HttpRequestExecutor(NodeExecutor):
    """Issues a single HTTP request. Non-2xx responses are results, not errors."""

    node_type = NodeType.HTTP_REQUEST
    config_model = HttpRequestConfig

    def __init__(self, default_timeout: float = 30.0, session: Optional[requests.Session] = None):
        super().__init__()
        self.default_timeout = default_timeout
        self.session = session

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Dict[str, Any]:
        config: HttpRequestConfig = self.parse_config(configuration)
        cancellation.raise_if_cancelled(context.execution_id)

        request_kwargs: Dict[str, Any] = {
            "headers": dict(config.headers),
            "timeout": config.timeout or self.default_timeout,
        }
        if config.body not in (None, "") and config.method in BODY_METHODS:
            if isinstance(config.body, str):
                request_kwargs["data"] = config.body.encode("utf-8")
                if not any(key.lower() == "content-type" for key in config.headers):
                    request_kwargs["headers"]["Content-Type"] = "application/json; charset=utf-8"
            else:
                request_kwargs["json"] = config.body

        self.logger.info(f"{config.method} {config.url}")
        sender = self.session or requests
        try:
            response = sender.request(config.method, config.url, **request_kwargs)
        except requests.RequestException as e:
            raise NodeExecutionError(
                f"HTTP request to {config.url} failed: {str(e)}",
                node_type=self.node_type.value,
            )

        result = {
            "statusCode": response.status_code,
            "isSuccess": 200 <= response.status_code < 300,
            "headers": dict(response.headers),
            "body": response.text,
        }
        self.logger.debug(f"{config.method} {config.url} -> {response.status_code}")
        return result

