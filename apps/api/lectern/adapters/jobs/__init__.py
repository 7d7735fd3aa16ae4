"""Remote job client adapters."""

from .assemblyai import AssemblyAITranscriptionClient
from .base import ExternalJobClient, JobPayload, PollResult
from .groq import GroqSummarizationClient
from .mock_client import MockJobClient

__all__ = [
    "AssemblyAITranscriptionClient",
    "ExternalJobClient",
    "GroqSummarizationClient",
    "JobPayload",
    "MockJobClient",
    "PollResult",
]
