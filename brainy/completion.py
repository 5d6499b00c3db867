"""Chat-completions client for an OpenAI-compatible HTTP API.

Uses urllib so the only runtime dependency is pydantic, which validates the
response shape.
"""

from __future__ import annotations

import logging
import socket
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import BaseModel, Field, ValidationError

from .errors import CompletionError

log = logging.getLogger("brainy.completion")

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


class ChatMessage(BaseModel):
    role: str = "user"
    content: str | None = ""


class Choice(BaseModel):
    message: ChatMessage = Field(default_factory=ChatMessage)
    finish_reason: str | None = None
    index: int = 0


class ServiceError(BaseModel):
    code: str | int | None = None
    message: str | None = ""
    type: str | None = None
    param: str | None = None


class ChatCompletion(BaseModel):
    """Subset of the chat-completions response the bot relies on."""

    id: str = ""
    model: str = ""
    choices: list[Choice] = Field(default_factory=list)
    error: ServiceError | None = None


class ChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    temperature: float = 0.7


def parse_completion(body: bytes | str) -> str:
    """Extract the first choice's content, raising CompletionError on failure."""
    try:
        completion = ChatCompletion.model_validate_json(body)
    except ValidationError as exc:
        raw = body.decode(errors="replace") if isinstance(body, bytes) else body
        raise CompletionError(
            "malformed completion response", component="completion", detail=raw[:2000],
        ) from exc

    if completion.error is not None and completion.error.code:
        raise CompletionError(
            f"service error {completion.error.code}: {completion.error.message}",
            component="completion",
        )
    if not completion.choices:
        raise CompletionError("no usable completion: empty choices", component="completion")

    log.debug("completion model=%s choices=%d", completion.model, len(completion.choices))
    return completion.choices[0].message.content or ""


def _service_error(body: bytes) -> ServiceError | None:
    try:
        error = ChatCompletion.model_validate_json(body).error
    except ValidationError:
        return None
    return error if error is not None and error.code else None


class CompletionClient:
    """POST a single user prompt to ``{base_url}/chat/completions``."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        temperature: float = 0.7,
        timeout: int = 120,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout

    def build_request(self, prompt: str) -> ChatRequest:
        return ChatRequest(
            model=self.model,
            messages=[ChatMessage(role="user", content=prompt)],
            temperature=self.temperature,
        )

    def complete(self, prompt: str, timeout: int | None = None) -> str:
        """Send ``prompt`` and return the generated text."""
        body = self.build_request(prompt).model_dump_json().encode()
        req = Request(
            f"{self.base_url}/chat/completions",
            data=body,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
        )
        try:
            resp = urlopen(req, timeout=timeout or self.timeout)
            raw = resp.read()
        except HTTPError as exc:
            # Error payloads usually carry the structured error object.
            raw = exc.read() or b""
            error = _service_error(raw)
            if error is not None:
                raise CompletionError(
                    f"service error {error.code}: {error.message}", component="completion",
                ) from exc
            raise CompletionError(
                f"HTTP {exc.code}", component="completion",
                detail=raw.decode(errors="replace")[:2000],
            ) from exc
        except (URLError, socket.timeout, OSError) as exc:
            raise CompletionError(f"request failed: {exc}", component="completion") from exc

        return parse_completion(raw)

    @classmethod
    def from_config(cls, cfg) -> "CompletionClient":
        return cls(
            api_key=cfg.api_key,
            model=cfg.model,
            base_url=cfg.base_url,
            temperature=cfg.temperature,
            timeout=cfg.completion_timeout,
        )
