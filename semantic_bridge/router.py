"""Routes relay messages through the generation backend.

Inbound message -> validate -> GenerationRequest -> GenerationClient ->
ResponseCache -> semantic_response (or semantic_error) back to the relay.

Each accepted request is processed in its own task so the relay reader is
never blocked by a generation call. There is no limit on how many requests
can be in flight at once.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Optional, Protocol

from .cache import ResponseCache
from .generation import BackendError, ChatMessage, GenerationClient, GenerationRequest, now_ms

logger = logging.getLogger(__name__)

SEMANTIC_REQUEST = "semantic_request"
SEMANTIC_CHAT = "semantic_chat"
SEMANTIC_RESPONSE = "semantic_response"
SEMANTIC_ERROR = "semantic_error"


class MalformedMessage(ValueError):
    """Inbound payload is not JSON, not an object, or has no type."""


class Outbound(Protocol):
    async def send(self, message: dict) -> bool: ...


class RequestRouter:
    """
    Validates inbound relay messages and dispatches them to the backend.

    Requests are tracked in an in-flight map keyed by identifier. A second
    submission with an identifier that is still in flight joins the pending
    task instead of hitting the backend again. Once a request completes it
    leaves the map, so queueLength in the stats is the real backlog.
    """

    def __init__(
        self,
        client: GenerationClient,
        cache: ResponseCache,
        link: Outbound,
    ):
        self.client = client
        self.cache = cache
        self.link = link

        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def queue_length(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> dict[str, Any]:
        """Processing statistics."""
        return {
            "queueLength": self.queue_length,
            "cacheSize": self.cache.size(),
            "cachedResponses": self.cache.keys(),
        }

    def get_response(self, request_id: str):
        """Cached response for an identifier, or None."""
        return self.cache.get(request_id)

    # =========================================================================
    # Inbound
    # =========================================================================

    @staticmethod
    def parse_message(raw: str | bytes) -> dict:
        """Decode an inbound payload.

        Raises:
            MalformedMessage: if the payload is not a JSON object with a type.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessage(f"Invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MalformedMessage("Message is not a JSON object")
        if not data.get("type") or not isinstance(data["type"], str):
            raise MalformedMessage("Invalid message: missing type")
        return data

    async def handle_message(self, raw: str | bytes) -> Optional[asyncio.Task]:
        """Handle one relay message. Returns the processing task, if any."""
        try:
            data = self.parse_message(raw)
            msg_type = data["type"]

            if msg_type == SEMANTIC_REQUEST:
                request = self.build_request(data)
                return self.submit(request)

            elif msg_type == SEMANTIC_CHAT:
                request, history = self.build_chat_request(data)
                return self.submit(request, history)

            else:
                logger.warning(f"Unrecognized message type: {msg_type}")
                return None

        except MalformedMessage as e:
            logger.warning(f"Discarding relay message: {e}")
            return None

    def build_request(self, data: dict) -> GenerationRequest:
        """Build a GenerationRequest from a semantic_request message."""
        prompt = data.get("prompt")
        if prompt is None:
            prompt = ""
        elif not isinstance(prompt, str):
            raise MalformedMessage("prompt must be a string")
        if not prompt:
            # Forwarded anyway; the backend decides what an empty prompt means.
            logger.warning("semantic_request %s has an empty prompt", data.get("id"))

        return GenerationRequest(
            id=str(data.get("id") or uuid.uuid4()),
            prompt=prompt,
            model=data.get("model") or None,
            temperature=data.get("temperature"),
            top_k=data.get("topK"),
            top_p=data.get("topP"),
        )

    def build_chat_request(self, data: dict) -> tuple[GenerationRequest, list[ChatMessage]]:
        """Build a request plus history from a semantic_chat message."""
        entries = data.get("messages")
        if not isinstance(entries, list) or not entries:
            raise MalformedMessage("semantic_chat requires a non-empty messages list")

        try:
            history = [ChatMessage(role=m["role"], content=m["content"]) for m in entries]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid chat message: {e}") from e

        # The prompt echoed back is the latest user turn.
        prompt = next((m.content for m in reversed(history) if m.role == "user"), "")
        request = GenerationRequest(
            id=str(data.get("id") or uuid.uuid4()),
            prompt=prompt,
            model=data.get("model") or None,
            temperature=data.get("temperature"),
        )
        return request, history

    def submit(
        self,
        request: GenerationRequest,
        history: Optional[list[ChatMessage]] = None,
    ) -> asyncio.Task:
        """Queue a request for processing, joining a pending one with the same id."""
        pending = self._in_flight.get(request.id)
        if pending is not None and not pending.done():
            logger.warning(f"[{request.id}] Already in flight, joining pending request")
            return pending

        task = asyncio.create_task(self.process_request(request, history))
        self._in_flight[request.id] = task
        task.add_done_callback(lambda t, rid=request.id: self._forget(rid, t))
        return task

    def _forget(self, request_id: str, task: asyncio.Task):
        if self._in_flight.get(request_id) is task:
            del self._in_flight[request_id]

    async def join(self):
        """Wait for every in-flight request to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_request(
        self,
        request: GenerationRequest,
        history: Optional[list[ChatMessage]] = None,
    ) -> dict:
        """Run a request through the backend and send the outcome to the relay.

        Failures are terminal for the request: a semantic_error goes out and
        nothing is retried.
        """
        try:
            if history is not None:
                response = await self.client.chat(history, request)
            else:
                response = await self.client.generate(request)

        except Exception as e:
            if isinstance(e, BackendError):
                logger.warning(f"[{request.id}] Backend failed: {e}")
            else:
                logger.exception(f"[{request.id}] Request processing failed")
            message = {
                "type": SEMANTIC_ERROR,
                "id": request.id,
                "error": str(e),
                "timestamp": now_ms(),
            }

        else:
            self.cache.put(request.id, response)
            logger.info(
                f"[{request.id}] Generated {response.tokens.completion} tokens "
                f"in {response.processing_time}ms"
            )
            message = {"type": SEMANTIC_RESPONSE, **response.to_message()}

        await self.link.send(message)
        return message
