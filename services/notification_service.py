"""
Deal Notification Service
System-authored messages posted into the buyer/seller conversation.

The engine collects notifications while a transition runs and hands them to
the emitter only after the transaction has committed. Delivery is best effort:
a failing chat gateway is logged and never propagates back into the engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from config import Config
from models import Deal

logger = logging.getLogger(__name__)


class NotificationCategory(Enum):
    """Deal milestones that produce a chat message"""
    AGENT_EMAIL = "agent_email"
    RIGHTS_CONFIRMED = "rights_confirmed"
    HOLDING_PERIOD_COMPLETED = "holding_period_completed"
    PRIMARY_OWNER_CONFIRMED = "primary_owner_confirmed"
    BUYER_PAID_SELLER = "buyer_paid_seller"
    DEAL_COMPLETED = "deal_completed"


@dataclass
class DealNotification:
    """One system message for the conversation between a deal's buyer and seller"""
    deal_id: int
    transaction_id: str
    buyer_id: int
    seller_id: int
    category: NotificationCategory
    content: str
    preview: str
    sender_id: int = field(default_factory=lambda: Config.SYSTEM_SENDER_ID)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "participants": [self.buyer_id, self.seller_id],
            "sender_id": self.sender_id,
            "message_type": "system",
            "content": self.content,
            "preview": self.preview,
            "metadata": {
                "deal_id": self.deal_id,
                "transaction_id": self.transaction_id,
                "category": self.category.value,
            },
        }


def _format_when(value: Optional[datetime]) -> str:
    return value.strftime("%b %d, %Y at %H:%M UTC") if value else "unknown"


class DealMessageComposer:
    """Builds the human-readable content and preview for each milestone"""

    @staticmethod
    def _make(deal: Deal, category: NotificationCategory, content: str, preview: str) -> DealNotification:
        return DealNotification(
            deal_id=deal.id,
            transaction_id=deal.transaction_id,
            buyer_id=deal.buyer_id,
            seller_id=deal.seller_id,
            category=category,
            content=content,
            preview=preview,
        )

    @classmethod
    def agent_email(cls, deal: Deal, via_crypto: bool, agent_email: Optional[str] = None) -> DealNotification:
        agent_email = agent_email if agent_email is not None else Config.AGENT_EMAIL
        lead = (
            "🎉 Great news! The cryptocurrency payment has been confirmed and your deal is now "
            "proceeding to the next step."
            if via_crypto else
            "🎉 Great news! The transaction fee has been paid and your deal is now proceeding "
            "to the next step."
        )
        content = (
            f"{lead}\n\n"
            f"📧 **Agent Email for Account Rights**: {agent_email or 'will be shared by our agent'}\n\n"
            "Please add this email as a manager/collaborator to your account so our agent can verify "
            "everything and facilitate the secure transfer. Once you've given rights to this email, "
            "please confirm below.\n\n"
            "⚠️ **Important**: Only give manager/collaborator access, NOT ownership. Our agent will "
            "handle the ownership transfer securely."
        )
        return cls._make(deal, NotificationCategory.AGENT_EMAIL, content,
                         "System: Agent email provided for account access")

    @classmethod
    def rights_confirmed(cls, deal: Deal) -> DealNotification:
        if deal.holding_period_expires_at is not None:
            content = (
                "✅ **Rights Confirmed!**\n\n"
                "The seller has confirmed giving account access to our agent.\n\n"
                f"⏰ This platform requires a {Config.HOLDING_PERIOD_DAYS}-day waiting period before our "
                "agent can be promoted to Primary Owner.\n\n"
                f"**Waiting period ends**: {_format_when(deal.holding_period_expires_at)}\n\n"
                "You will be notified here as soon as the waiting period has completed."
            )
            preview = "System: Rights confirmed, waiting period started"
        else:
            content = (
                "✅ **Rights Confirmed!**\n\n"
                "The seller has confirmed giving account access to our agent. The agent will now:\n\n"
                "1. Verify account access and authenticity\n"
                "2. Review account details and metrics\n"
                "3. Prepare for secure ownership transfer\n"
                "4. Notify both parties when ready to proceed\n\n"
                "This process typically takes 1-3 business days. You will be updated once the "
                "verification is complete."
            )
            preview = "System: Rights confirmed"
        return cls._make(deal, NotificationCategory.RIGHTS_CONFIRMED, content, preview)

    @classmethod
    def holding_period_completed(cls, deal: Deal, completed_at: datetime) -> DealNotification:
        content = (
            "⏰ **WAITING PERIOD COMPLETED** ⏰\n\n"
            f"Great news! The {Config.HOLDING_PERIOD_DAYS}-day waiting period has now completed.\n\n"
            f"**Channel**: {deal.channel_title}\n"
            f"**Transaction ID**: #{deal.transaction_id}\n"
            f"**Timer started**: {_format_when(deal.holding_period_started_at)}\n"
            f"**Timer completed**: {_format_when(completed_at)}\n\n"
            "🎯 **You can now promote our agent to Primary Owner of your channel.**\n\n"
            "📋 **Note**: Our admin can also confirm the promotion once you've made the agent "
            "Primary Owner.\n\n"
            "⚠️ **Important**: Only promote to Primary Owner, don't transfer ownership yet. Our agent "
            "will handle the final transfer securely after confirmation."
        )
        return cls._make(deal, NotificationCategory.HOLDING_PERIOD_COMPLETED, content,
                         "System: Waiting period completed")

    @classmethod
    def primary_owner_confirmed(cls, deal: Deal, by_admin: bool) -> DealNotification:
        who = "Our agent has confirmed" if by_admin else "The seller has confirmed"
        content = (
            "👑 **Primary Owner Confirmed!**\n\n"
            f"{who} that the agent is now Primary Owner of **{deal.channel_title}**.\n\n"
            f"💰 Buyer: please send the agreed amount of ${deal.channel_price} to the seller using one "
            "of the selected payment methods, then confirm the payment below."
        )
        return cls._make(deal, NotificationCategory.PRIMARY_OWNER_CONFIRMED, content,
                         "System: Agent promoted to primary owner")

    @classmethod
    def buyer_paid_seller(cls, deal: Deal) -> DealNotification:
        content = (
            "💸 **Payment Sent!**\n\n"
            f"The buyer has confirmed sending ${deal.channel_price} for **{deal.channel_title}**.\n\n"
            "Seller: please check that the payment has arrived and confirm receipt below."
        )
        return cls._make(deal, NotificationCategory.BUYER_PAID_SELLER, content,
                         "System: Buyer confirmed payment")

    @classmethod
    def deal_completed(cls, deal: Deal) -> DealNotification:
        content = (
            "🎉 **Deal Completed!**\n\n"
            f"The seller has confirmed receiving payment for **{deal.channel_title}**.\n\n"
            "Our agent will now complete the ownership transfer to the buyer. Thank you for using "
            "our escrow service!"
        )
        return cls._make(deal, NotificationCategory.DEAL_COMPLETED, content,
                         "System: Deal completed")


class ChatGateway:
    """Delivery boundary to the external chat collaborator"""

    def post_system_message(self, notification: DealNotification) -> None:
        raise NotImplementedError


class LoggingChatGateway(ChatGateway):
    """Used when no chat service is configured: the message only goes to the log"""

    def post_system_message(self, notification: DealNotification) -> None:
        logger.info(
            f"💬 CHAT_LOG_ONLY: deal {notification.deal_id} "
            f"[{notification.category.value}] {notification.preview}"
        )


class HttpChatGateway(ChatGateway):
    """Posts system messages to the chat service over HTTP"""

    def __init__(self, base_url: str, token: str = "", timeout: int = 5, http=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.http = http or requests.Session()

    def post_system_message(self, notification: DealNotification) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.http.post(
            f"{self.base_url}/conversations/system-messages",
            json=notification.to_payload(),
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()


def build_chat_gateway() -> ChatGateway:
    if Config.CHAT_SERVICE_URL:
        return HttpChatGateway(
            Config.CHAT_SERVICE_URL,
            token=Config.CHAT_SERVICE_TOKEN,
            timeout=Config.CHAT_SERVICE_TIMEOUT_SECONDS,
        )
    return LoggingChatGateway()


class NotificationEmitter:
    """Hands committed notifications to the chat gateway, one at a time"""

    def __init__(self, gateway: Optional[ChatGateway] = None):
        self.gateway = gateway or build_chat_gateway()

    def emit(self, notifications: List[DealNotification]) -> int:
        """Deliver each notification; returns how many were delivered. Never raises."""
        delivered = 0
        for notification in notifications:
            try:
                self.gateway.post_system_message(notification)
                delivered += 1
                logger.info(
                    f"✅ NOTIFICATION_SENT: deal {notification.deal_id} [{notification.category.value}]"
                )
            except Exception as e:
                logger.error(
                    f"❌ NOTIFICATION_FAILED: deal {notification.deal_id} "
                    f"[{notification.category.value}]: {e}",
                    exc_info=True,
                )
        return delivered
