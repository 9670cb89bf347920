# backend/coveredrx/services/llm.py
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from coveredrx import config

log = logging.getLogger("llm")


@dataclass
class LLMCompletion:
    content: str
    executed_tools: List[str] = field(default_factory=list)

    @property
    def used_web_search(self) -> bool:
        return len(self.executed_tools) > 0


class LLMClient:
    """
    Chat-completions client for the text-generation backend.
    Blocking; async callers run it through asyncio.to_thread.
    """

    def __init__(self, api_key: Optional[str] = None, endpoint: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else config.GROQ_API_KEY
        self.endpoint = endpoint or config.LLM_ENDPOINT
        self.timeout = timeout if timeout is not None else config.LLM_TIMEOUT_SECONDS
        self.session = session if session is not None else requests.Session()
        if not self.api_key:
            log.warning("GROQ_API_KEY is not set; text-generation calls will fail over to fallbacks")

    def complete(self, messages: List[Dict[str, str]], model: str,
                 temperature: float = 0.1, max_tokens: Optional[int] = None) -> LLMCompletion:
        if not self.api_key:
            raise RuntimeError("Text-generation API key is not configured")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        try:
            response = self.session.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise RuntimeError(f"Text-generation request failed: {e}") from e
        except ValueError as e:
            raise RuntimeError(f"Text-generation backend returned non-JSON body: {e}") from e

        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError):
            raise RuntimeError("No response from text-generation backend")

        content = message.get("content") or ""
        if not content.strip():
            raise RuntimeError("No response from text-generation backend")

        tools = [t.get("type", "unknown") for t in (message.get("executed_tools") or []) if isinstance(t, dict)]
        if tools:
            log.info("Backend used tools: %s", ", ".join(tools))
        return LLMCompletion(content=content, executed_tools=tools)

    def health_check(self) -> bool:
        try:
            completion = self.complete(
                [{"role": "user", "content": "Say 'healthy'"}],
                model=config.HEALTH_CHECK_MODEL,
                max_tokens=10,
            )
            return "healthy" in completion.content.lower()
        except Exception as e:
            log.error("Health check failed: %s", e)
            return False
