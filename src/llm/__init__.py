"""LLM clients and the resilient extraction protocol."""

from .base import LLM, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, Embedder, Message
from .config import ContinuationConfig
from .continuation import (
    BadCsvResponse,
    JsonResponse,
    append_overlap,
    extract_json_from_response,
    generate_csv_response,
    generate_json_response,
    generate_json_response_messages,
    generate_json_with_repair,
    generate_text_response,
    progressive_timeout,
    remove_think_tags,
    strip_html_tags,
    truncate_to_last_close_brace,
)
from .openai_llm import OpenAIEmbedder, OpenAILLM
from .errors import (
    CsvExtractionError,
    ExtractionCancelled,
    ExtractionError,
    RetriesExhaustedError,
    StagnationError,
)
from .tabular import make_tsv_parser

__all__ = [
    "LLM",
    "OpenAILLM",
    "OpenAIEmbedder",
    "Embedder",
    "Message",
    "ROLE_ASSISTANT",
    "ROLE_SYSTEM",
    "ROLE_USER",
    "ContinuationConfig",
    "BadCsvResponse",
    "JsonResponse",
    "append_overlap",
    "extract_json_from_response",
    "generate_csv_response",
    "generate_json_response",
    "generate_json_response_messages",
    "generate_json_with_repair",
    "generate_text_response",
    "progressive_timeout",
    "remove_think_tags",
    "strip_html_tags",
    "truncate_to_last_close_brace",
    "CsvExtractionError",
    "ExtractionCancelled",
    "ExtractionError",
    "RetriesExhaustedError",
    "StagnationError",
    "make_tsv_parser",
]
