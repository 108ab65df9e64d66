"""API nodes - credential authentication required."""

from chainly.nodes.apis.anthropic import AnthropicExecutor
from chainly.nodes.apis.discord import DiscordExecutor
from chainly.nodes.apis.gemini import GeminiExecutor
from chainly.nodes.apis.google_calendar import GoogleCalendarExecutor
from chainly.nodes.apis.openai import OpenAIExecutor

__all__ = [
    "AnthropicExecutor",
    "DiscordExecutor",
    "GeminiExecutor",
    "GoogleCalendarExecutor",
    "OpenAIExecutor",
]
