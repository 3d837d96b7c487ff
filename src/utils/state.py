from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import db.crud as crud
from db.models import User
from notify.mailer import Notifier, build_notifier
from payments.paypal import PayPalClient, PayPalRefundProvider
from payments.stripe import CardRefundProvider, StripeClient
from shop.refunds import RefundService


def _default_refunds() -> RefundService:
    return RefundService(
        providers={
            "card": CardRefundProvider(StripeClient.from_settings()),
            "paypal": PayPalRefundProvider(PayPalClient.from_settings()),
        }
    )


@dataclass
class GlobalState:
    """
    Centralized application state shared by screens.

    Fields:
      - user: the signed-in admin, None until sign-in
      - refunds: refund / reconciliation service used by the order actions
      - notifier: email sender used for shipping notices
    """

    user: Optional[User] = None
    refunds: RefundService = field(default_factory=_default_refunds)
    notifier: Notifier = field(default_factory=build_notifier)

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    async def sign_in(self, user_id: str) -> Optional[User]:
        """Sign in as ``user_id``. Returns the user only if it exists and is an admin."""
        user = await crud.get_user(user_id.strip())
        if user is None or not user.is_admin:
            return None
        self.user = user
        return user

    def sign_out(self) -> None:
        self.user = None
