"""aiohttp servers: the agent websocket ingress and the UI gateway."""
from .gateway import AguiGateway
from .ingress import OutboundChannel, SocketIngress

__all__ = ["AguiGateway", "OutboundChannel", "SocketIngress"]
