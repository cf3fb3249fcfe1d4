# Copyright (c) Syntropy Systems
"""HTTP client for the fallback output interpreter."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, cast

import httpx
from pydantic import ValidationError
from typing_extensions import Self

from quorum.errors import QuorumError
from quorum.models.base import QuorumBaseModel

if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

SYSTEM_PROMPT = (
    "You are a JSON extraction assistant. Output only valid JSON matching the "
    "requested schema. No markdown, no explanation, just JSON."
)


class InterpreterError(QuorumError):
    """Error from interpreter endpoint communication."""


class Interpreter(Protocol):
    """Turns a worker document into a JSON string following a schema."""

    def interpret(self, role: str, text: str, schema: str) -> Optional[str]:
        ...


class _ChatMessage(QuorumBaseModel):
    role: str = "assistant"
    content: Optional[str] = None


class _ChatChoice(QuorumBaseModel):
    message: _ChatMessage


class _ChatResponse(QuorumBaseModel):
    choices: list[_ChatChoice]


class _HttpxResponse(Protocol):
    def raise_for_status(self) -> _HttpxResponse:
        ...

    def json(self) -> object:
        ...


class _HttpxClient(Protocol):
    def post(self, url: str, *, json: Mapping[str, object] | None = None) -> _HttpxResponse:
        ...

    def close(self) -> None:
        ...


class HttpInterpreter:
    """Interpreter backed by an OpenAI-compatible chat completions endpoint."""

    base_url: str
    model: str
    timeout: float
    _client: _HttpxClient

    def __init__(self, base_url: str, model: str, timeout: float = 60.0) -> None:
        """Initialize the interpreter client.

        Args:
            base_url: Endpoint root, e.g. "http://localhost:11434/v1"
            model: Model name passed through to the endpoint
            timeout: Request timeout in seconds

        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        client = cast("object", httpx.Client(timeout=timeout))
        self._client = cast("_HttpxClient", client)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> Self:
        """Enter the client context and return self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the client context and close the HTTP client."""
        self.close()

    def interpret(self, role: str, text: str, schema: str) -> Optional[str]:
        """Ask the endpoint for JSON extracted from a worker document.

        Raises:
            InterpreterError: the request failed or the response was malformed.

        """
        prompt = (
            f"Extract structured data from this {role} document as JSON. "
            f"Follow this schema exactly: {schema}\n\nDocument:\n{text}"
        )
        try:
            response = self._client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": 0,
                },
            )
            _ = response.raise_for_status()
            data = _ChatResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            msg = f"Interpreter error: {e}"
            raise InterpreterError(msg) from e
        except httpx.RequestError as e:
            msg = f"Connection error: {e}"
            raise InterpreterError(msg) from e
        except (ValidationError, ValueError) as e:
            msg = f"Malformed interpreter response: {e}"
            raise InterpreterError(msg) from e

        if not data.choices:
            return None
        return data.choices[0].message.content


def interpreter_from_config(
    url: Optional[str],
    model: Optional[str],
    timeout: float,
) -> Optional[HttpInterpreter]:
    """Build an HttpInterpreter when both endpoint and model are configured."""
    if not url or not model:
        return None
    return HttpInterpreter(url, model, timeout=timeout)
