"""Default-approval policy for discovered tools."""

from deskpilot.core.permissions.policy_engine import RiskDecision, RiskLevel, ToolSafetyPolicy

__all__ = ["RiskDecision", "RiskLevel", "ToolSafetyPolicy"]
