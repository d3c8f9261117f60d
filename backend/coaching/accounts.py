"""
Coach Account Resolver

Maps providers to their connected processor accounts. The Fund Router and
the Reconciler read through here; webhooks and onboarding write through
here. A missing or deauthorized account is a hard routing failure.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from utils.clock import to_iso, utcnow

from .config import APP_URL, CONNECT_DEFAULT_COUNTRY, ONBOARDING_REFRESH_PATH, ONBOARDING_RETURN_PATH
from .errors import AccountNotFound, ProcessorError, RoutingUnavailable
from .models import AccountLink, CoachAccount

logger = logging.getLogger(__name__)


class CoachAccountResolver:

    def __init__(self, store, processor=None, clock=utcnow):
        self.store = store
        self.processor = processor
        self.clock = clock

    async def get_account(self, provider_id: str) -> Optional[CoachAccount]:
        doc = await self.store.get_coach_account(provider_id)
        return CoachAccount(**doc) if doc else None

    async def get_account_ref(self, provider_id: str) -> Optional[str]:
        """Connected account reference, only if it can receive funds."""
        account = await self.get_account(provider_id)
        if account and account.is_usable:
            return account.processor_account_ref
        return None

    async def require_account_ref(self, provider_id: str) -> str:
        account_ref = await self.get_account_ref(provider_id)
        if not account_ref:
            raise RoutingUnavailable(provider_id=provider_id)
        return account_ref

    async def find_provider_by_account_ref(self, account_ref: str) -> Optional[str]:
        doc = await self.store.get_coach_account_by_ref(account_ref)
        return doc.get("provider_id") if doc else None

    async def save_account(
        self,
        provider_id: str,
        processor_account_ref: str,
        charges_enabled: bool = False,
        payouts_enabled: bool = False,
        details_submitted: bool = False,
    ) -> CoachAccount:
        doc = await self.store.upsert_coach_account(provider_id, {
            "processor_account_ref": processor_account_ref,
            "charges_enabled": charges_enabled,
            "payouts_enabled": payouts_enabled,
            "details_submitted": details_submitted,
            "deauthorized": False,
            "updated_at": to_iso(self.clock()),
        })
        logger.info(f"Saved connected account {processor_account_ref} for provider {provider_id}")
        return CoachAccount(**doc)

    # ==================== ONBOARDING ====================

    def _require_processor(self, operation: str):
        if self.processor is None:
            raise ProcessorError("Stripe is not configured", operation=operation)
        return self.processor

    async def create_account(
        self,
        provider_id: str,
        provider_name: str,
        email: str,
        sport: str,
        country: Optional[str] = None,
        business_type: str = "individual",
    ) -> CoachAccount:
        """
        Create the provider's connected account and store the mapping.

        A provider that already has a usable account keeps it; no second
        processor account is created.
        """
        existing = await self.get_account(provider_id)
        if existing and existing.is_usable:
            logger.info(f"Provider {provider_id} already has account {existing.processor_account_ref}")
            return existing

        status = await self._require_processor("create_account").create_account(
            provider_id=provider_id,
            provider_name=provider_name,
            email=email,
            sport=sport,
            country=country or CONNECT_DEFAULT_COUNTRY,
            business_type=business_type,
        )
        return await self.save_account(
            provider_id,
            status.processor_account_ref,
            charges_enabled=status.charges_enabled,
            payouts_enabled=status.payouts_enabled,
            details_submitted=status.details_submitted,
        )

    async def create_onboarding_link(
        self,
        account_ref: str,
        refresh_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> AccountLink:
        return await self._require_processor("create_account_link").create_account_link(
            account_ref,
            refresh_url=refresh_url or f"{APP_URL}{ONBOARDING_REFRESH_PATH}",
            return_url=return_url or f"{APP_URL}{ONBOARDING_RETURN_PATH}&accountId={account_ref}",
        )

    async def provider_onboarding_link(
        self,
        provider_id: str,
        refresh_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> Tuple[CoachAccount, AccountLink]:
        """
        Raises:
            AccountNotFound: the provider has no usable connected account
        """
        account = await self.get_account(provider_id)
        if not account or not account.is_usable:
            raise AccountNotFound(provider_id=provider_id)
        link = await self.create_onboarding_link(account.processor_account_ref, refresh_url, return_url)
        return account, link

    async def start_onboarding(
        self,
        provider_id: str,
        provider_name: str,
        email: str,
        sport: str,
        country: Optional[str] = None,
        business_type: str = "individual",
    ) -> Tuple[CoachAccount, AccountLink]:
        account = await self.create_account(provider_id, provider_name, email, sport, country, business_type)
        link = await self.create_onboarding_link(account.processor_account_ref)
        logger.info(f"Onboarding started for provider {provider_id} ({account.processor_account_ref})")
        return account, link

    # ==================== PROCESSOR EVENTS ====================

    async def apply_processor_status(self, account: Dict[str, Any]) -> Dict[str, Any]:
        """Store capability flags from an account.updated payload."""
        account_ref = account.get("id")
        if not account_ref:
            return {"status": "skipped", "reason": "No account id"}

        fields = {
            "charges_enabled": bool(account.get("charges_enabled")),
            "payouts_enabled": bool(account.get("payouts_enabled")),
            "details_submitted": bool(account.get("details_submitted")),
            "updated_at": to_iso(self.clock()),
        }

        provider_id = await self.find_provider_by_account_ref(account_ref)
        if provider_id:
            await self.store.upsert_coach_account(provider_id, fields)
        else:
            # Accounts created before the mapping was stored carry the
            # provider id in their metadata.
            metadata = account.get("metadata") or {}
            provider_id = metadata.get("coach_id") or metadata.get("coachId")
            if not provider_id:
                logger.warning(f"account.updated for unknown account {account_ref}")
                return {"status": "skipped", "reason": "Unknown account", "account": account_ref}
            await self.store.upsert_coach_account(
                provider_id, {"processor_account_ref": account_ref, "deauthorized": False, **fields}
            )

        return {
            "status": "success",
            "action": "account_updated",
            "account": account_ref,
            "provider_id": provider_id,
            **fields,
        }

    async def mark_deauthorized(self, account_ref: str) -> Dict[str, Any]:
        updated = await self.store.update_coach_account_by_ref(account_ref, {
            "deauthorized": True,
            "charges_enabled": False,
            "payouts_enabled": False,
            "updated_at": to_iso(self.clock()),
        })
        if not updated:
            logger.warning(f"Deauthorization for unknown account {account_ref}")
            return {"status": "skipped", "reason": "Unknown account", "account": account_ref}

        logger.warning(f"Connected account {account_ref} deauthorized; routing disabled")
        return {"status": "success", "action": "account_deauthorized", "account": account_ref}

    async def refresh_status(self, provider_id: str) -> Optional[CoachAccount]:
        """
        Pull the live capability flags from the processor and store them.

        Returns the stored account unchanged if the processor is unavailable.
        """
        account = await self.get_account(provider_id)
        if not account or not account.processor_account_ref:
            return account
        if self.processor is None:
            return account

        try:
            status = await self.processor.retrieve_account(account.processor_account_ref)
        except ProcessorError as e:
            logger.warning(f"Could not refresh account for provider {provider_id}: {e}")
            return account

        doc = await self.store.upsert_coach_account(provider_id, {
            "charges_enabled": status.charges_enabled,
            "payouts_enabled": status.payouts_enabled,
            "details_submitted": status.details_submitted,
            "updated_at": to_iso(self.clock()),
        })
        return CoachAccount(**doc)
