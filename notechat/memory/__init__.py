from notechat.memory.manager import ConversationMemory, Exchange

__all__ = ["ConversationMemory", "Exchange"]
