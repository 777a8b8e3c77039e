"""External system integrations"""

# Messaging
from .messaging import (
    MessagingClient,
    HttpMessagingClient,
    RecordingMessagingClient,
    DeliveryResult,
    SentMessage
)

# AI
from .ai import TextGenerator, OpenAITextGenerator, EchoTextGenerator

# HTTP
from .http_client import HttpRequester, HttpxRequester, HttpResponse

# Exceptions
from .exceptions import (
    IntegrationError,
    MessagingError,
    TextGenerationError,
    HttpCallError
)

__all__ = [
    # Messaging
    "MessagingClient",
    "HttpMessagingClient",
    "RecordingMessagingClient",
    "DeliveryResult",
    "SentMessage",

    # AI
    "TextGenerator",
    "OpenAITextGenerator",
    "EchoTextGenerator",

    # HTTP
    "HttpRequester",
    "HttpxRequester",
    "HttpResponse",

    # Exceptions
    "IntegrationError",
    "MessagingError",
    "TextGenerationError",
    "HttpCallError"
]
