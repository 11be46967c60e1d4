"""
OpenAI GPT streaming client for agent responses.

Supports:
- Token-level streaming to a callback
- Connection pooling for reduced latency
- Failures surfaced as GenerationError
"""

import asyncio
import json
import logging
from typing import Callable, Optional

import aiohttp

from voiceloop.config import settings

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Keep responses concise and natural for speech. "
    "Answer in plain sentences without lists, markdown or emoji."
)


class GenerationError(Exception):
    """The generation stream failed before completing."""


class OpenAIGenerator:
    """
    Manages streaming requests to OpenAI chat completions.

    Features:
    - Server-sent-event parsing, one callback per content delta
    - Persistent HTTP connection pool shared across turns
    - Completion and failure are mutually exclusive outcomes of generate()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_model
        self.max_tokens = max_tokens or settings.openai_max_tokens
        self.system_prompt = system_prompt
        self.base_url = "https://api.openai.com/v1/chat/completions"

        # Persistent session for connection pooling
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,  # Max 10 concurrent connections
                ttl_dns_cache=300,  # Cache DNS for 5 minutes
                keepalive_timeout=120,
            )

            timeout = aiohttp.ClientTimeout(
                total=30,
                connect=3,
                sock_read=10
            )

            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
            logger.info("✅ Created persistent OpenAI session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed OpenAI persistent session")

    async def generate(self, prompt: str, on_token: Callable[[str], None]) -> None:
        """
        Stream a response to the user's utterance.

        Args:
            prompt: User utterance
            on_token: Called with each content delta, in order

        Raises:
            GenerationError: API error, network error or malformed stream
        """
        if not self.api_key:
            raise GenerationError("OPENAI_API_KEY is not set")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "stream": True,
            "temperature": 0.7,
            "max_tokens": self.max_tokens,
        }

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        token_count = 0

        try:
            session = await self._get_session()
            logger.info(f"🚀 Starting LLM stream: model={self.model}, prompt='{prompt[:50]}'")

            async with session.post(self.base_url, headers=headers, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise GenerationError(f"OpenAI API error {response.status}: {error_text[:200]}")

                async for line in response.content:
                    line = line.decode('utf-8').strip()
                    if not line or not line.startswith('data: '):
                        continue

                    data_str = line[6:]  # Remove 'data: ' prefix
                    if data_str == '[DONE]':
                        break

                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Failed to parse SSE data: {e}")
                        continue

                    choices = data.get('choices') or []
                    if not choices:
                        continue

                    content = choices[0].get('delta', {}).get('content')
                    if content:
                        token_count += 1
                        if token_count == 1:
                            logger.info(f"✅ LLM streaming: First token received ('{content}')")
                        on_token(content)

        except asyncio.CancelledError:
            logger.info("LLM generation task cancelled")
            raise
        except aiohttp.ClientError as e:
            raise GenerationError(f"OpenAI network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise GenerationError("OpenAI stream timed out") from e

        logger.info(f"LLM generation complete: {token_count} tokens")
