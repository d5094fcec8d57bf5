from sales_agent.schemas.webhook import IncomingWebhook, WebhookResponse

__all__ = ["IncomingWebhook", "WebhookResponse"]
