"""Thin chat client that asks the model for its next auto-run turn."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from http.client import HTTPException
from urllib import request
from urllib.error import HTTPError, URLError

from shellpilot.agent.models import Message

LOGGER = logging.getLogger(__name__)

_ROLE_MAP = {"user": "user", "ai": "assistant", "system": "user"}


class ModelCallError(RuntimeError):
    """The model collaborator could not produce a response."""


class ChatClient:
    """Small HTTP client for an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        api_url: str = "https://api.openai.com/v1/chat/completions",
        max_context_chars: int = 24000,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.max_context_chars = max_context_chars
        self.timeout = timeout

    def chat(self, system_prompt: str, messages: Sequence[Message]) -> str:
        payload = self._build_payload(system_prompt, messages)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(payload["messages"]),
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            raise ModelCallError(details) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc.reason)},
            )
            raise ModelCallError(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            raise ModelCallError(f"Model request timed out after {self.timeout:.1f}s") from exc
        except (HTTPException, OSError) as exc:
            LOGGER.error(
                "llm_request_connection_error",
                extra={"api_url": self.api_url, "model": self.model, "error": repr(exc)},
            )
            raise ModelCallError(f"Model request connection error: {exc!r}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={"api_url": self.api_url, "model": self.model, "error": str(exc)},
            )
            raise ModelCallError(f"Model response parsing error: {exc}") from exc

        return self._extract_text(raw_response)

    def _build_payload(
        self, system_prompt: str, messages: Sequence[Message]
    ) -> dict[str, object]:
        chat_messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for message in self._trim_history(messages):
            content = message.content
            if message.role == "system":
                content = f"System Output:\n{content}"
            chat_messages.append({"role": _ROLE_MAP[message.role], "content": content})
        return {"model": self.model, "messages": chat_messages}

    def _trim_history(self, messages: Sequence[Message]) -> list[Message]:
        """Keep the newest messages that fit within ``max_context_chars``."""
        selected: list[Message] = []
        used = 0
        for message in reversed(messages):
            used += len(message.content)
            if selected and used > self.max_context_chars:
                break
            selected.append(message)
        selected.reverse()
        return selected

    @staticmethod
    def _extract_text(payload: object) -> str:
        if not isinstance(payload, dict):
            raise ModelCallError("Model response parsing error: expected top-level object")
        choices = payload.get("choices")
        if isinstance(choices, list):
            for choice in choices:
                message = choice.get("message") if isinstance(choice, dict) else None
                content = message.get("content") if isinstance(message, dict) else None
                if isinstance(content, str):
                    return content
        raise ModelCallError("Model response parsing error: no message content returned")

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt
