from .validators import (
    StructuredOutputError,
    clamp_non_negative,
    count_words,
    parse_json_payload,
    strip_html,
    unwrap_json_fence,
)

__all__ = [
    "StructuredOutputError",
    "clamp_non_negative",
    "count_words",
    "parse_json_payload",
    "strip_html",
    "unwrap_json_fence",
]
