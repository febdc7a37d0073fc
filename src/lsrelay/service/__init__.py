"""Extension service hop: client, connection, launcher and service host."""

from lsrelay.service.client import ExtensionServiceClient, ExtensionServiceRequest
from lsrelay.service.connection import RemoteExtensionService, ServiceConnection
from lsrelay.service.interface import ExtensionServiceProtocol, Method
from lsrelay.service.launcher import CommunicationBridge, ServiceLauncher

__all__ = [
    "CommunicationBridge",
    "ExtensionServiceClient",
    "ExtensionServiceProtocol",
    "ExtensionServiceRequest",
    "Method",
    "RemoteExtensionService",
    "ServiceConnection",
    "ServiceLauncher",
]
