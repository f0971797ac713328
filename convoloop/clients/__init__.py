"""External service clients."""

from .dialogue_client import DialogueClient, DialogueConfig, HttpDialogueClient

__all__ = ["DialogueClient", "DialogueConfig", "HttpDialogueClient"]
