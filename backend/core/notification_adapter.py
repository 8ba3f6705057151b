# backend/core/notification_adapter.py

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
import logging

from core.clock import utcnow


logger = logging.getLogger(__name__)


class NotificationCategory(str, Enum):
    """Categories shown to users in their notification feed"""

    ORDER = "order"
    EXTENSION = "extension"
    CONTRACT = "contract"
    SIGNATURE = "signature"
    LOYALTY = "loyalty"
    DISCOUNT = "discount"


@dataclass
class NotificationMessage:
    """Standard notification message structure"""

    category: NotificationCategory
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[Any] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow()


class NotificationAdapter(ABC):
    """
    Notification sink.

    Delivery is fire-and-forget: callers dispatch notifications after their
    transaction commits and never depend on the outcome.
    """

    @abstractmethod
    def notify(self, user_id: int, message: NotificationMessage) -> bool:
        """Deliver a notification to one user"""

    @abstractmethod
    def get_adapter_name(self) -> str:
        """Return the name of this adapter"""


class LoggingAdapter(NotificationAdapter):
    """Logs every notification; the default sink for development and tests"""

    def __init__(self, log_level: int = logging.INFO):
        self.log_level = log_level

    def notify(self, user_id: int, message: NotificationMessage) -> bool:
        logger.log(
            self.log_level,
            f"[NOTIFICATION] To User {user_id} - {message.title}: {message.body}",
            extra={
                "user_id": user_id,
                "category": message.category.value,
                "timestamp": message.timestamp.isoformat(),
                "notification_metadata": message.metadata,
            },
        )
        return True

    def get_adapter_name(self) -> str:
        return "logging"


class CompositeAdapter(NotificationAdapter):
    """Fans a notification out to several adapters; one failing does not stop the rest"""

    def __init__(self, adapters: List[NotificationAdapter]):
        self.adapters = adapters

    def notify(self, user_id: int, message: NotificationMessage) -> bool:
        delivered = False
        for adapter in self.adapters:
            try:
                delivered = adapter.notify(user_id, message) or delivered
            except Exception as e:
                logger.error(f"Adapter {adapter.get_adapter_name()} failed: {e}")
        return delivered

    def get_adapter_name(self) -> str:
        return "composite(" + ",".join(a.get_adapter_name() for a in self.adapters) + ")"


class NotificationService:
    """Thin facade used by the domain services"""

    def __init__(self, adapter: Optional[NotificationAdapter] = None):
        self.adapter = adapter or LoggingAdapter()

    def notify(
        self,
        user_id: int,
        category: NotificationCategory,
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        message = NotificationMessage(
            category=category, title=title, body=body, metadata=metadata or {}
        )
        return self.adapter.notify(user_id, message)
