"""
Service wiring for the coaching pipeline.

All components share one injected store and one processor; nothing is a
module-level singleton. The app keeps the container on app.state and routes
pull it with get_services.
"""

from fastapi import HTTPException, Request

from utils.clock import utcnow

from .accounts import CoachAccountResolver
from .checkout import CheckoutService
from .conversations import ConversationManager
from .fund_router import FundRouter
from .guard import ConversationGuard
from .issuer import EntitlementIssuer
from .reconciler import TransferReconciler
from .webhook_handler import StripeWebhookHandler


class CoachingServices:

    def __init__(self, store, processor, clock=utcnow):
        self.store = store
        self.processor = processor
        self.accounts = CoachAccountResolver(store, processor, clock)
        self.conversations = ConversationManager(store, clock)
        self.router = FundRouter(store, self.accounts, processor, clock)
        self.issuer = EntitlementIssuer(store, self.conversations, self.router, clock)
        self.reconciler = TransferReconciler(store, self.accounts, processor)
        self.guard = ConversationGuard(store, self.conversations, clock)
        self.checkout = CheckoutService(processor, self.accounts, self.issuer)
        self.webhooks = StripeWebhookHandler(processor, self.issuer, self.accounts, store, clock)


def get_services(request: Request) -> CoachingServices:
    services = getattr(request.app.state, "coaching", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Coaching services not initialised")
    return services
