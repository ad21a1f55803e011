# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Outbound actions requested by node handlers.

The interpreter decides what to send; an ``OutboundActions`` implementation
performs the delivery. ``HttpxOutbound`` talks to the network,
``InMemoryOutbound`` records everything and replays scripted responses.
"""

import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import OutboundConfig, get_config
from .exceptions import OutboundError

logger = logging.getLogger("loyaltyflow.outbound")


@dataclass
class OutgoingMessage:
    """Rendered message for the delivery layer"""
    execution_id: str
    node_id: str
    session_id: str
    chat_id: Optional[str]
    text: str
    buttons: List[List[Dict[str, Any]]] = field(default_factory=list)
    parse_mode: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HttpCall:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HttpResult:
    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    is_json: bool = False
    elapsed_ms: Optional[int] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OutboundActions(ABC):
    """Collaborator that performs deliveries and HTTP calls"""

    @abstractmethod
    async def send_message(self, message: OutgoingMessage) -> Dict[str, Any]:
        """Hand a message to the delivery layer, returns a receipt"""

    @abstractmethod
    async def http_request(self, call: HttpCall) -> HttpResult:
        """
        Perform an HTTP call.

        Raises:
            OutboundError: On timeout or transport failure. Non-2xx responses
                are returned, not raised; the caller decides.
        """


class HttpxOutbound(OutboundActions):
    """Outbound actions over httpx"""

    def __init__(
        self,
        config: Optional[OutboundConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config().outbound
        self.transport = transport

    async def http_request(self, call: HttpCall) -> HttpResult:
        timeout_ms = call.timeout_ms or self.config.http_timeout_ms
        kwargs: Dict[str, Any] = {"headers": call.headers}
        if call.query:
            kwargs["params"] = call.query
        if isinstance(call.body, (str, bytes)):
            kwargs["content"] = call.body
        elif call.body is not None:
            kwargs["json"] = call.body

        started = time.monotonic()
        async with httpx.AsyncClient(
            timeout=timeout_ms / 1000,
            verify=self.config.enable_ssl_verify,
            transport=self.transport,
            headers={"User-Agent": self.config.user_agent},
        ) as client:
            try:
                response = await client.request(call.method, call.url, **kwargs)
            except httpx.TimeoutException as e:
                raise OutboundError(
                    f"{call.method} {call.url} timed out after {timeout_ms} ms",
                    url=call.url,
                    cause=e,
                )
            except httpx.HTTPError as e:
                raise OutboundError(f"{call.method} {call.url} failed: {e}", url=call.url, cause=e)

        try:
            content = response.json()
            is_json = True
        except ValueError:
            content = response.text
            is_json = False

        return HttpResult(
            status_code=response.status_code,
            body=content,
            headers=dict(response.headers),
            is_json=is_json,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    async def send_message(self, message: OutgoingMessage) -> Dict[str, Any]:
        endpoint = self.config.message_endpoint
        if not endpoint:
            logger.info(f"No message endpoint configured, message for {message.session_id} not delivered")
            return {"delivered": False, "reason": "no message endpoint configured"}

        result = await self.http_request(HttpCall(method="POST", url=endpoint, body=message.to_dict()))
        if not result.ok:
            raise OutboundError(
                f"Message endpoint answered {result.status_code}",
                url=endpoint,
                status_code=result.status_code,
            )
        return {"delivered": True, "status_code": result.status_code}


ResponseHandler = Callable[[HttpCall], Any]


class InMemoryOutbound(OutboundActions):
    """
    Records messages and calls; answers HTTP calls from a script.

    Usage:
        outbound = InMemoryOutbound()
        outbound.add_response("https://api.example.com/points", body={"points": 40})
    """

    def __init__(self, handler: Optional[ResponseHandler] = None):
        self.handler = handler
        self.messages: List[OutgoingMessage] = []
        self.calls: List[HttpCall] = []
        self._responses: Dict[str, HttpResult] = {}

    def add_response(
        self,
        url: str,
        status_code: int = 200,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._responses[url] = HttpResult(
            status_code=status_code,
            body=body,
            headers=headers or {},
            is_json=not isinstance(body, str),
        )

    async def http_request(self, call: HttpCall) -> HttpResult:
        self.calls.append(call)
        if self.handler is not None:
            result = self.handler(call)
            if inspect.isawaitable(result):
                result = await result
            return result
        if call.url in self._responses:
            return self._responses[call.url]
        return HttpResult(status_code=404, body="no scripted response", is_json=False)

    async def send_message(self, message: OutgoingMessage) -> Dict[str, Any]:
        self.messages.append(message)
        return {"delivered": True, "recorded": True}
