"""Application layer."""

from agent_toolgate.application.chat import ChatReply, ChatService, ChatSession, ReplyKind
from agent_toolgate.application.executor import ToolExecutor
from agent_toolgate.application.intent import normalize, to_canonical_json
from agent_toolgate.application.policy import ApprovalGate, GateResult

__all__ = [
    "ApprovalGate",
    "ChatReply",
    "ChatService",
    "ChatSession",
    "GateResult",
    "ReplyKind",
    "ToolExecutor",
    "normalize",
    "to_canonical_json",
]
