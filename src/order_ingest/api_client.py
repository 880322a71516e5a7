"""
Shared OpenAI API client. Lazily initialized and reused by the AI fallback parser.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Optional

from dotenv import load_dotenv

from .config import settings

if TYPE_CHECKING:
    from openai import OpenAI

load_dotenv()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_client: Optional["OpenAI"] = None
_lock = threading.Lock()


def get_openai_client() -> Optional["OpenAI"]:
    """Return the shared OpenAI client, or None if no API key is configured."""
    global _client
    with _lock:
        if _client is not None:
            return _client
        api_key = settings.OPENROUTER_API_KEY or settings.OPENAI_API_KEY
        if not api_key:
            return None
        from openai import OpenAI
        if settings.OPENROUTER_API_KEY:
            _client = OpenAI(api_key=api_key, base_url=OPENROUTER_BASE_URL)
        else:
            _client = OpenAI(api_key=api_key)
        return _client
