"""Python client for the AI assistant API."""

from app.client.ai_client import AIAssistantClient, AIRunResult, AssistantAPIError

__all__ = ["AIAssistantClient", "AIRunResult", "AssistantAPIError"]
