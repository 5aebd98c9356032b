from .bridge import BridgeService
from .gate import PARTNER_REWARDS, GateFlow

__all__ = ["BridgeService", "GateFlow", "PARTNER_REWARDS"]
