from typing import Optional, Dict, Any
import httpx
from pydantic import BaseModel


class HttpFetchResult(BaseModel):
    status: int
    body: Any = None  # Parsed JSON when the response is JSON, text otherwise

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpFetchClient:
    """
    Generic outbound HTTP client used by http_request actions.
    The caller always supplies the timeout; transport errors and timeouts propagate as httpx exceptions.
    """

    async def fetch(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = 10
    ) -> HttpFetchResult:
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body is not None and method.upper() not in ("GET", "DELETE"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.request(method.upper(), url, **request_kwargs)

        try:
            parsed_body = response.json()
        except ValueError:
            parsed_body = response.text
        return HttpFetchResult(status=response.status_code, body=parsed_body)
