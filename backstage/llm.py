import logging
from typing import Any, Dict, Iterator, Optional

from openai import OpenAI, OpenAIError

from backstage.errors import ModelProviderError

logger = logging.getLogger("backstage.llm")

GENERATION_FAILED = "Failed to generate a response from the AI model."


class LLMClient:
    """
    OpenAI chat-completions wrapper. Every call takes a system instruction and
    a single user prompt; provider errors surface as ModelProviderError.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-5-nano-2025-08-07", client=None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @classmethod
    def from_settings(cls, settings):
        return cls(api_key=settings.openai_api_key, model=settings.llm_model)

    @property
    def client(self):
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def _messages(self, system: str, prompt: str):
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]

    def generate(self, system: str, prompt: str) -> str:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(system, prompt),
            )
        except OpenAIError as e:
            logger.error("Model call failed: %s", e)
            raise ModelProviderError(GENERATION_FAILED)
        return (resp.choices[0].message.content or "").strip()

    def stream(self, system: str, prompt: str) -> Iterator[str]:
        # Opening the stream happens here so connection errors are raised to the caller
        try:
            chunks = self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(system, prompt),
                stream=True,
            )
        except OpenAIError as e:
            logger.error("Model stream failed to open: %s", e)
            raise ModelProviderError(GENERATION_FAILED)

        def pieces():
            try:
                for chunk in chunks:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield delta
            except OpenAIError as e:
                logger.error("Model stream interrupted: %s", e)
                raise ModelProviderError(GENERATION_FAILED)
            finally:
                chunks.close()

        return pieces()

    def generate_json(self, system: str, prompt: str, name: str, schema: Dict[str, Any]) -> str:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(system, prompt),
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": name, "strict": True, "schema": schema},
                },
            )
        except OpenAIError as e:
            logger.error("Structured model call failed: %s", e)
            raise ModelProviderError(GENERATION_FAILED)
        return resp.choices[0].message.content or ""
