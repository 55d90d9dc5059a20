"""Agent turn runner.

Runs one conversational turn against an OpenAI-compatible chat endpoint,
walking the agent's model chain (primary, then fallbacks) until one model
answers. Every failed attempt is recorded; when the whole chain fails the
attempts travel with the AgentRunError.

Endpoint resolution:
  1. OpenRouter       (OPENROUTER_API_KEY)
  2. Custom endpoint  (OPENAI_BASE_URL + OPENAI_API_KEY)
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from agent.scope import ModelChain
from gateway.errors import AgentRunError
from oni_constants import OPENROUTER_BASE_URL

logger = logging.getLogger(__name__)

# OpenRouter app attribution headers
_OR_HEADERS = {
    "X-OpenRouter-Title": "Oni Gateway",
    "X-OpenRouter-Categories": "productivity,chat",
}

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT_S = 120.0


@dataclass
class TurnResult:
    text: str
    model: str
    attempts: List[Dict[str, str]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "model": self.model,
            "attempts": self.attempts,
            "usage": {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens},
            "elapsedMs": self.elapsed_ms,
        }


def resolve_client_kwargs(env: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
    """Keyword arguments for AsyncOpenAI, or None when no endpoint is configured."""
    env = os.environ if env is None else env
    or_key = env.get("OPENROUTER_API_KEY")
    if or_key:
        return {"api_key": or_key, "base_url": OPENROUTER_BASE_URL, "default_headers": dict(_OR_HEADERS)}
    custom_base = env.get("OPENAI_BASE_URL")
    custom_key = env.get("OPENAI_API_KEY")
    if custom_base and custom_key:
        return {"api_key": custom_key, "base_url": custom_base}
    return None


def build_system_prompt(identity: Dict[str, Any], extra: Optional[str] = None) -> str:
    lines = [f"You are {identity.get('name') or identity.get('agentId')}, a helpful assistant."]
    if extra:
        lines.append(extra.strip())
    return "\n\n".join(lines)


class AgentTurnRunner:
    """
    Runs turns through the model chain.

    ``client`` may be injected (tests pass an AsyncMock shaped like
    AsyncOpenAI); otherwise one is built from the environment on first use.
    """

    def __init__(
        self,
        client: Any = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ):
        self._client = client
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s

    def _get_client(self) -> Any:
        if self._client is None:
            kwargs = resolve_client_kwargs()
            if kwargs is None:
                raise AgentRunError("No model endpoint configured (set OPENROUTER_API_KEY or OPENAI_BASE_URL + OPENAI_API_KEY)")
            self._client = AsyncOpenAI(timeout=self.timeout_s, **kwargs)
        return self._client

    async def run_turn(
        self,
        chain: ModelChain,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
    ) -> TurnResult:
        models = chain.models()
        if not models:
            raise AgentRunError("No model configured for this agent")

        client = self._get_client()
        request_messages = list(messages)
        if system_prompt:
            request_messages.insert(0, {"role": "system", "content": system_prompt})

        attempts: List[Dict[str, str]] = []
        started = time.monotonic()
        for model in models:
            try:
                response = await client.chat.completions.create(
                    model=model,
                    messages=request_messages,
                    max_tokens=self.max_tokens,
                )
            except Exception as e:
                logger.warning("Model %s failed: %s", model, e)
                attempts.append({"model": model, "error": str(e)})
                continue

            choices = getattr(response, "choices", None) or []
            text = (choices[0].message.content or "") if choices else ""
            if not text.strip():
                logger.warning("Model %s returned an empty reply", model)
                attempts.append({"model": model, "error": "empty response"})
                continue

            usage = getattr(response, "usage", None)
            if attempts:
                logger.info("Fell back to %s after %d failed attempt(s)", model, len(attempts))
            return TurnResult(
                text=text,
                model=model,
                attempts=attempts,
                input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

        summary = "; ".join(f"{a['model']}: {a['error']}" for a in attempts)
        raise AgentRunError(f"All models failed ({summary})", attempts=attempts)
