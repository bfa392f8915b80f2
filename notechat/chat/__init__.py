from notechat.chat.session import ChatSession, Message

__all__ = ["ChatSession", "Message"]
