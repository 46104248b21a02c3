"""Secondary coding agent: the ``qwen`` CLI, which speaks the same stream-json format."""

from __future__ import annotations

from .claude import StreamJsonExecutor

__all__ = ["QwenExecutor"]


class QwenExecutor(StreamJsonExecutor):
    """Executor for the qwen agent.

    Completion markers are removed from the forwarded and accumulated text;
    the detected signal is still reported on the result.
    """

    tool = "qwen"
    default_command = "qwen"
    default_args = ("--yolo", "--output-format", "stream-json")
    prompt_flag = "--prompt"
    strip_markers = True
