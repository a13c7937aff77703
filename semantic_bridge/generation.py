"""Client for the local text-generation backend (Ollama HTTP API).

Endpoints used:
- GET  /api/tags      model listing, doubles as the availability probe
- POST /api/generate  single-turn generation (stream disabled)
- POST /api/chat      multi-turn chat (stream disabled)

Unlike the probe and listing calls, generation failures are raised as
BackendError so the router can turn them into semantic_error messages.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.9

PROBE_TIMEOUT = 5.0

CHAT_ROLES = ("user", "assistant", "system")


class BackendError(Exception):
    """A generation or chat call failed or timed out."""


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class GenerationRequest:
    """Request for generation, built from an inbound relay message."""
    id: str
    prompt: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by the backend."""
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def to_dict(self) -> dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass(frozen=True)
class GenerationResponse:
    """Completed generation. Never mutated once cached."""
    id: str
    prompt: str
    model: str
    response: str
    tokens: TokenUsage
    processing_time: int  # ms, dispatch to backend reply
    timestamp: int

    def to_message(self) -> dict[str, Any]:
        """Relay wire format, without the message type."""
        return {
            "id": self.id,
            "prompt": self.prompt,
            "model": self.model,
            "response": self.response,
            "tokens": self.tokens.to_dict(),
            "processingTime": self.processing_time,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ChatMessage:
    """One turn of a chat history."""
    role: str
    content: str

    def __post_init__(self):
        if self.role not in CHAT_ROLES:
            raise ValueError(f"Invalid chat role: {self.role!r}")


class GenerationClient:
    """
    Client for an Ollama-compatible generation backend.

    Each call is independent. The backend only keeps one model loaded at a
    time; that is its concern, not ours.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Backend URL is required")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    async def close(self):
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    async def is_available(self) -> bool:
        """Check if the backend answers the listing endpoint."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags", timeout=PROBE_TIMEOUT)
            return response.status_code == 200
        except Exception:
            return False

    async def list_models(self) -> list[str]:
        """List models installed on the backend. Empty on failure."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags", timeout=PROBE_TIMEOUT)
            response.raise_for_status()
            data = response.json()
            return [m["name"] for m in data.get("models") or [] if "name" in m]
        except Exception as e:
            logger.warning(f"Failed to list backend models: {e}")
            return []

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Single-turn generation with the full response returned at once."""
        model = request.model or self.model
        payload = {
            "model": model,
            "prompt": request.prompt,
            "temperature": _or_default(request.temperature, DEFAULT_TEMPERATURE),
            "top_k": _or_default(request.top_k, DEFAULT_TOP_K),
            "top_p": _or_default(request.top_p, DEFAULT_TOP_P),
            "stream": False,
        }

        logger.info(f"Generating [{request.id}] with {model}: {request.prompt[:50]!r}")
        start = time.perf_counter()
        data = await self._post("/api/generate", payload)
        processing_time = int((time.perf_counter() - start) * 1000)

        return self._build_response(request, model, data.get("response", ""), data, processing_time)

    async def chat(
        self,
        history: Sequence[ChatMessage],
        request: GenerationRequest,
    ) -> GenerationResponse:
        """Multi-turn chat. The history is sent as-is, oldest first."""
        model = request.model or self.model
        payload = {
            "model": model,
            "messages": [asdict(m) for m in history],
            "temperature": _or_default(request.temperature, DEFAULT_TEMPERATURE),
            "stream": False,
        }

        logger.info(f"Chat [{request.id}] with {model}: {len(history)} messages")
        start = time.perf_counter()
        data = await self._post("/api/chat", payload)
        processing_time = int((time.perf_counter() - start) * 1000)

        message = data.get("message")
        if not isinstance(message, dict):
            raise BackendError("Backend returned unexpected payload: missing chat message")
        return self._build_response(request, model, message.get("content", ""), data, processing_time)

    async def _post(self, path: str, payload: dict) -> dict:
        """POST to the backend, mapping every failure to BackendError."""
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.post(url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.warning(f"Backend request to {path} timed out after {self.timeout}s")
            raise BackendError(f"Backend request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning(f"Could not reach backend at {self.base_url}: {e}")
            raise BackendError(f"Backend request failed: {e}") from e

        if response.status_code != 200:
            error_text = response.text[:500]
            logger.warning(f"Backend returned {response.status_code}: {error_text}")
            raise BackendError(f"Backend error ({response.status_code}): {error_text}")

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError("Backend returned invalid JSON") from e
        if not isinstance(data, dict):
            raise BackendError("Backend returned unexpected payload")
        return data

    @staticmethod
    def _build_response(
        request: GenerationRequest,
        model: str,
        text: Any,
        data: dict,
        processing_time: int,
    ) -> GenerationResponse:
        if not isinstance(text, str):
            raise BackendError(f"Backend returned unexpected payload: response is {type(text).__name__}")
        tokens = TokenUsage(
            prompt=_token_count(data, "prompt_eval_count"),
            completion=_token_count(data, "eval_count"),
        )
        return GenerationResponse(
            id=request.id,
            prompt=request.prompt,
            model=model,
            response=text,
            tokens=tokens,
            processing_time=processing_time,
            timestamp=now_ms(),
        )


def _or_default(value, default):
    # Only an absent value falls back; an explicit 0 is forwarded.
    return default if value is None else value


def _token_count(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise BackendError(f"Backend returned unexpected payload: {key}={value!r}")
    return value
