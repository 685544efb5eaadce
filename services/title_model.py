"""
# services/title_model.py

Module Contract
- Purpose: Thin wrapper over an OpenAI-compatible chat endpoint (OpenRouter by default) used only to name chats.
- Inputs:
  - api_key/model/base_url from config.app_config (overridable); optional AsyncOpenAI client for tests
- Outputs:
  - generate_once(prompt, system_prompt, max_tokens) -> Optional[str]; None when offline or on error
- Side effects:
  - One network call per request when an API key is configured.
"""
from typing import Optional

import httpx
from openai import AsyncOpenAI

from config.app_config import TITLE_MODEL, TITLE_MODEL_API_KEY, TITLE_MODEL_BASE_URL
from utils.logging_utils import get_logger, log_and_time

logger = get_logger("title_model")


class TitleModel:
    """OpenAI-compatible client for short, non-streaming completions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key or TITLE_MODEL_API_KEY
        self.model = model or TITLE_MODEL
        self.base_url = base_url or TITLE_MODEL_BASE_URL

        if client is not None:
            self.async_client = client
        elif self.api_key:
            async_http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=2),
                headers={"Connection": "keep-alive"},
            )
            self.async_client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                http_client=async_http_client,
            )
        else:
            # No API key: titles fall back to the local heuristic
            self.async_client = None

    @property
    def available(self) -> bool:
        return self.async_client is not None

    @log_and_time("Title Model")
    async def generate_once(
        self,
        prompt: str,
        system_prompt: str = "You generate short, descriptive chat titles.",
        max_tokens: int = 30,
        temperature: float = 0.7,
    ) -> Optional[str]:
        if self.async_client is None:
            return None
        try:
            response = await self.async_client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                stream=False,
            )
        except Exception as e:
            logger.error(f"[TITLE] Title model error: {type(e).__name__}: {e}")
            return None

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None

    async def aclose(self) -> None:
        if self.async_client is not None:
            await self.async_client.close()
