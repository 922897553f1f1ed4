from voxagent.providers.base import LlmProvider, create_provider

__all__ = ["LlmProvider", "create_provider"]
