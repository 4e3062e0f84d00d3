"""agent-notion: Notion for scripts and LLM agents, over the official or v3 API."""

__version__ = "0.3.0"
