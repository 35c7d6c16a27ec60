from draft_gateway.gateway.responses import GatewayResult
from draft_gateway.gateway.service import DraftGateway

__all__ = ["DraftGateway", "GatewayResult"]
