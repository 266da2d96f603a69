# src/taskmaster_sync/llm/offline.py

from __future__ import annotations


class OfflineContentGenerator:
    """
    Offline deterministic generator used when no external API is configured.

    Echoes the instructions back so rewrite flows still complete end to end.
    """

    def generate_text(self, prompt: str, *, system_prompt: str) -> str:
        instructions = prompt.rsplit("Instructions:", 1)[-1].strip()
        return (
            "Offline mode: no external LLM is configured "
            "(set TASKMASTER_OPENAI_API_KEY to enable real drafts).\n"
            f"Requested change: {instructions}"
        )
