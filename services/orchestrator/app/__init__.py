"""NovelForge orchestration service."""
