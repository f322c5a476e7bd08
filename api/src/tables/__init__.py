from .base import Base
from .shop import Shop
from .payment import Payment
from .webhook_log import WebhookLog
from .notify_handler_request import HandlerNotificationRequest
