"""Title stage."""

from .engine import TitlePayload, TitleResult, generate_titles, parse_title_payload, stream_titles

__all__ = ["TitlePayload", "TitleResult", "generate_titles", "parse_title_payload", "stream_titles"]
