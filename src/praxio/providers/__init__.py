"""Provider abstraction layer.

Adding a provider means subclassing ``Provider`` and listing it in
``praxio.runtime.build_providers``; nothing else changes.
"""

from praxio.providers.base import Provider
from praxio.providers.claude import ClaudeProvider
from praxio.providers.gemini import GeminiProvider
from praxio.providers.registry import ProviderDescriptor, ProviderRegistry

__all__ = [
    "ClaudeProvider",
    "GeminiProvider",
    "Provider",
    "ProviderDescriptor",
    "ProviderRegistry",
]
