from sales_agent.models.conversation import ConversationRecord

__all__ = [
    "ConversationRecord",
]
