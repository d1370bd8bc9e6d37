"""Failure taxonomy for the research engine.

Only ``RoutingError`` aborts a journey. Every other error is caught by the
stage that raised it and recorded as metadata on the journey.
"""
from __future__ import annotations


class ResearchError(Exception):
    """Base class for engine failures."""

    user_message = "Something went wrong while preparing your answer."


class RoutingError(ResearchError):
    user_message = "Could not decide how to answer this question. Please try again."


class PlanningError(ResearchError):
    pass


class AnalysisError(ResearchError):
    pass


class ProviderError(ResearchError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ReflectionError(ResearchError):
    pass


class SynthesisError(ResearchError):
    user_message = "The answer could not be completed."


class JourneyTimeoutError(ResearchError):
    user_message = "Research took too long and was stopped."
