"""Harness: the ReAct loop and retry helpers that keep it running."""

from voxagent.harness.loop import LoopResult, ReactLoop
from voxagent.harness.retry import RetryConfig, with_retries

__all__ = ["LoopResult", "ReactLoop", "RetryConfig", "with_retries"]
