"""Google Tasks API integration."""

from juggler.google.client import GatewayAction, TasksGateway
from juggler.google.models import RemoteTask, TaskList, TokenResponse
from juggler.google.oauth import AccessToken, OAuthConfig, TokenManager

__all__ = [
    "AccessToken",
    "GatewayAction",
    "OAuthConfig",
    "RemoteTask",
    "TaskList",
    "TasksGateway",
    "TokenManager",
    "TokenResponse",
]
