"""Streaming inference: prompt assembly, orchestration, and cancellation."""

from __future__ import annotations

from pocketlm.inference.cancel import CancellationController
from pocketlm.inference.orchestrator import (
    GenerationOutcome,
    GenerationResult,
    InferenceOrchestrator,
)
from pocketlm.inference.prompts import ChatTurn, build_text_prompt

__all__ = [
    "CancellationController",
    "ChatTurn",
    "GenerationOutcome",
    "GenerationResult",
    "InferenceOrchestrator",
    "build_text_prompt",
]
