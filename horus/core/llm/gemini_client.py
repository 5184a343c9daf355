"""
Gemini Invoker

LangChain wrapper around Gemini chat models. Exposes the narrow
``invoke(system_prompt, user_prompt) -> str`` contract the pipeline
stages depend on; anything with that method can stand in for it.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from horus.config import Settings, settings as default_settings
from horus.utils import get_logger, GenerativeCallError

logger = get_logger(__name__)


class GeminiModel(str, Enum):
    """Gemini chat models the pipeline is tested against."""
    FLASH_2_5 = "gemini-2.5-flash"
    FLASH_2_5_LITE = "gemini-2.5-flash-lite"
    PRO_2_5 = "gemini-2.5-pro"
    FLASH_2_0 = "gemini-2.0-flash"


@dataclass
class GeminiConfig:
    """Configuration for the Gemini invoker."""
    api_key: Optional[str] = None
    model: str = GeminiModel.FLASH_2_5.value
    temperature: float = 0.2
    max_output_tokens: int = 16384
    top_p: float = 0.8
    top_k: int = 40
    request_timeout_seconds: float = 60.0
    max_retries: int = 0        # retries are owned by the orchestrator

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiConfig":
        return cls(
            api_key=settings.api_key,
            model=settings.model,
            request_timeout_seconds=settings.llm_timeout_seconds,
        )


@dataclass
class GeminiResponse:
    """Structured response from Gemini."""
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    usage: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": round(self.latency_ms, 2),
        }


def _content_text(content: Any) -> str:
    """AIMessage.content may be a string or a list of content parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part if isinstance(part, str) else str(part.get("text", ""))
            for part in content
            if isinstance(part, (str, dict))
        )
    return str(content)


class GeminiInvoker:
    """
    Generative-text collaborator backed by Gemini.

    Raises GenerativeCallError for every failure (missing key, transport
    error, empty response) so the orchestrator can apply its retry policy.
    """

    def __init__(self, config: Optional[GeminiConfig] = None, llm: Optional[Any] = None):
        """
        Args:
            config: Optional configuration, built from settings if omitted
            llm: Optional pre-built LangChain chat model (used as-is)
        """
        self.config = config or GeminiConfig.from_settings(default_settings)
        self._llm = llm
        self._request_count = 0
        self._last_request_time: Optional[datetime] = None

        if self._llm is None:
            self._initialize()

    def _initialize(self):
        if not self.config.api_key:
            logger.warning("No Gemini API key provided - generative stages will fail")
            return

        self._llm = ChatGoogleGenerativeAI(
            model=self.config.model,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
            top_p=self.config.top_p,
            top_k=self.config.top_k,
            timeout=self.config.request_timeout_seconds,
            max_retries=self.config.max_retries,
            google_api_key=self.config.api_key,
        )
        logger.info(f"LangChain Gemini invoker initialized with model: {self.config.model}")

    @property
    def is_available(self) -> bool:
        return self._llm is not None

    @property
    def request_count(self) -> int:
        return self._request_count

    def generate(self, system_prompt: str, user_prompt: str) -> GeminiResponse:
        """Call the model and return text plus usage metadata."""
        if not self.is_available:
            raise GenerativeCallError("Gemini invoker is not configured (missing API key)", agent="gemini")

        start_time = datetime.now()
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        try:
            response = self._llm.invoke(messages)
        except Exception as e:
            logger.error(f"Gemini generation failed: {e}")
            raise GenerativeCallError(f"Gemini generation failed: {e}", agent="gemini") from e

        latency = (datetime.now() - start_time).total_seconds() * 1000
        text = _content_text(getattr(response, "content", response))
        if not text.strip():
            raise GenerativeCallError("Gemini returned an empty response", agent="gemini")

        usage = getattr(response, "usage_metadata", None) or {}
        self._request_count += 1
        self._last_request_time = datetime.now()

        return GeminiResponse(
            text=text,
            model=self.config.model,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=latency,
            usage=dict(usage),
        )

    def invoke(self, system_prompt: str, user_prompt: str) -> str:
        """Pipeline contract: prompt strings in, response text out."""
        return self.generate(system_prompt, user_prompt).text
