"""SpecPilot: staged LLM orchestration for turning ideas into specs."""

__version__ = "0.1.0"
