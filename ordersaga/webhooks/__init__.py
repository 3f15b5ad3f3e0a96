from ordersaga.webhooks.gateway import WebhookGateway

__all__ = ["WebhookGateway"]
