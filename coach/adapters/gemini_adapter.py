"""
Gemini Adapter
==============

Text generation and embeddings on the Google GenAI SDK.

- GeminiTextBackend.generate(prompt) -> raw JSON text
- GeminiEmbedder.embed(text) -> embedding vector

Timeouts and circuit breaking are applied by the caller
(``CircuitBreaker.call``); these classes only translate to SDK calls.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from google import genai
from google.genai.types import (
    GenerateContentConfig,
    HarmBlockThreshold,
    HarmCategory,
    SafetySetting,
)

from coach.advice.models import PromptSpec
from coach.core.errors import GenerationUnavailableError, RetrievalUnavailableError

logger = logging.getLogger(__name__)


# =============================================================================
# SAFETY SETTINGS
# =============================================================================

DEFAULT_SAFETY_SETTINGS = [
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_HARASSMENT,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
]


@dataclass
class GeminiConfig:
    model_name: str = "gemini-2.5-flash"
    embedding_model: str = "models/gemini-embedding-001"
    enable_safety_settings: bool = True


class GeminiTextBackend:
    """
    TextGenerationBackend over ``client.aio.models.generate_content``.

    USAGE:
        backend = GeminiTextBackend(client=genai.Client(api_key="..."))
        raw = await backend.generate(prompt_spec)
    """

    def __init__(self, client: genai.Client, config: Optional[GeminiConfig] = None):
        self.client = client
        self.config = config or GeminiConfig()

    async def generate(self, prompt: PromptSpec) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.config.model_name,
            contents=prompt.prompt,
            config=GenerateContentConfig(
                system_instruction=prompt.system_instruction,
                temperature=prompt.temperature,
                max_output_tokens=prompt.max_output_tokens,
                response_mime_type=prompt.response_mime_type,
                safety_settings=(
                    DEFAULT_SAFETY_SETTINGS if self.config.enable_safety_settings else None
                ),
            ),
        )
        text = response.text
        if not text:
            finish_reason = None
            if response.candidates:
                finish_reason = response.candidates[0].finish_reason
            raise GenerationUnavailableError(
                f"Empty response from {self.config.model_name} (finish_reason={finish_reason})"
            )
        return text


class GeminiEmbedder:
    """Embeds queries and knowledge snippets for vector search."""

    def __init__(self, client: genai.Client, config: Optional[GeminiConfig] = None):
        self.client = client
        self.config = config or GeminiConfig()

    async def embed(self, text: str) -> List[float]:
        result = await self.client.aio.models.embed_content(
            model=self.config.embedding_model,
            contents=text,
        )
        if not result.embeddings:
            raise RetrievalUnavailableError("Embedding response had no vectors")
        return list(result.embeddings[0].values)


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_gemini_client(api_key: str) -> genai.Client:
    if not api_key:
        raise ValueError("Gemini API key is required")
    return genai.Client(api_key=api_key)


def create_gemini_backend(
    client: genai.Client,
    model_name: Optional[str] = None,
    enable_safety_settings: bool = True,
) -> GeminiTextBackend:
    config = GeminiConfig(enable_safety_settings=enable_safety_settings)
    if model_name:
        config.model_name = model_name
    logger.info(f"GeminiTextBackend initialized: model={config.model_name}")
    return GeminiTextBackend(client=client, config=config)


def create_gemini_embedder(
    client: genai.Client,
    embedding_model: Optional[str] = None,
) -> GeminiEmbedder:
    config = GeminiConfig()
    if embedding_model:
        config.embedding_model = embedding_model
    return GeminiEmbedder(client=client, config=config)
