"""
LLM Layer

Gemini invoker (via LangChain) and JSON extraction for model output.
The model never sees raw sensor data and never produces numbers that
are not re-checked against the metric registry.
"""
from .gemini_client import GeminiConfig, GeminiInvoker, GeminiModel, GeminiResponse
from .parser import extract_json, parse_json

__all__ = [
    "GeminiConfig",
    "GeminiInvoker",
    "GeminiModel",
    "GeminiResponse",
    "extract_json",
    "parse_json",
]
