from .client import (
    PROVIDERS,
    EnhancementClient,
    EnhancementErrorKind,
    EnhancementRequest,
    EnhancementResult,
    ProviderConfig,
    RateLimiter,
    RetryPolicy,
    classify_failure,
    format_model_name,
)
from .presets import Enhancement, get_default_enhancements, index_enhancements
from .vocabulary_processor import apply_vocabulary_replacements

__all__ = [
    "PROVIDERS",
    "Enhancement",
    "EnhancementClient",
    "EnhancementErrorKind",
    "EnhancementRequest",
    "EnhancementResult",
    "ProviderConfig",
    "RateLimiter",
    "RetryPolicy",
    "apply_vocabulary_replacements",
    "classify_failure",
    "format_model_name",
    "get_default_enhancements",
    "index_enhancements",
]
