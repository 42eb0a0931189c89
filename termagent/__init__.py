"""termagent: terminal chat client for tool-using LLM agents."""

__version__ = "0.1.0"
