"""Exception types raised by the voice-direction pipeline."""

from __future__ import annotations


class VoiceDirectorError(RuntimeError):
    """Base class for pipeline errors."""


class CompletionError(VoiceDirectorError):
    """The completion service failed or returned unusable content."""


class DialogueRefinementError(VoiceDirectorError):
    """Dialogue segments are still missing delivery tags after refinement.

    This is the one fatal condition in the pipeline: dialogue must never
    ship without usable tags.
    """

    def __init__(self, unresolved_indices, reason: str = "") -> None:
        self.unresolved_indices = sorted(set(unresolved_indices))
        message = f"dialogue segments without delivery tags: {self.unresolved_indices}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
