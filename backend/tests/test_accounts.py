"""
Test Suite: Coach Account Resolver and onboarding
=================================================

- onboarding creates the connected account and stores the mapping
- a coach with a usable account is not given a second one
- onboarding links default to the app's earnings page
- account.updated resolves the provider through the stored mapping
"""

import sys
from pathlib import Path

import pytest
import stripe

sys.path.insert(0, str(Path(__file__).parent.parent))

from coaching.accounts import CoachAccountResolver
from coaching.config import APP_URL
from coaching.errors import AccountNotFound, ProcessorError
from coaching.processor import StripeProcessor


class TestOnboarding:

    @pytest.fixture
    def accounts(self, store, processor, clock):
        return CoachAccountResolver(store, processor, clock)

    @pytest.mark.asyncio
    async def test_create_account_stores_mapping(self, accounts, store, processor):
        account = await accounts.create_account("coach1", "Coach One", "coach@example.com", "golf")

        kwargs = processor.create_account.await_args.kwargs
        assert kwargs["provider_id"] == "coach1"
        assert kwargs["country"] == "CA"
        assert account.processor_account_ref == "acct_new"
        assert store.coach_accounts["coach1"]["processor_account_ref"] == "acct_new"
        # The new account can now receive separate transfers
        assert await accounts.require_account_ref("coach1") == "acct_new"

    @pytest.mark.asyncio
    async def test_existing_account_reused(self, accounts, processor):
        await accounts.save_account("coach1", "acct_coach1")

        account = await accounts.create_account("coach1", "Coach One", "coach@example.com", "golf")

        assert account.processor_account_ref == "acct_coach1"
        processor.create_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deauthorized_account_replaced(self, accounts, processor):
        await accounts.save_account("coach1", "acct_old")
        await accounts.mark_deauthorized("acct_old")

        account = await accounts.create_account("coach1", "Coach One", "coach@example.com", "golf")

        assert account.processor_account_ref == "acct_new"
        assert account.deauthorized is False

    @pytest.mark.asyncio
    async def test_start_onboarding_returns_link(self, accounts, processor):
        account, link = await accounts.start_onboarding("coach1", "Coach One", "coach@example.com", "golf")

        assert account.processor_account_ref == "acct_new"
        assert link.url.startswith("https://connect.stripe.com/")
        args, kwargs = processor.create_account_link.await_args
        assert args == ("acct_new",)
        assert kwargs["refresh_url"] == f"{APP_URL}/coach/earnings?refresh=true"
        assert kwargs["return_url"] == f"{APP_URL}/coach/earnings?success=true&accountId=acct_new"

    @pytest.mark.asyncio
    async def test_provider_link_requires_account(self, accounts, processor):
        with pytest.raises(AccountNotFound):
            await accounts.provider_onboarding_link("coach1")

        processor.create_account_link.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_link_custom_urls(self, accounts, processor):
        await accounts.save_account("coach1", "acct_coach1")

        await accounts.provider_onboarding_link("coach1", "https://app/refresh", "https://app/done")

        processor.create_account_link.assert_awaited_once_with(
            "acct_coach1", refresh_url="https://app/refresh", return_url="https://app/done",
        )

    @pytest.mark.asyncio
    async def test_no_processor(self, store, clock):
        accounts = CoachAccountResolver(store, None, clock)

        with pytest.raises(ProcessorError):
            await accounts.create_account("coach1", "Coach One", "coach@example.com", "golf")


class TestProcessorStatus:

    @pytest.fixture
    def accounts(self, store, processor, clock):
        return CoachAccountResolver(store, processor, clock)

    @pytest.mark.asyncio
    async def test_known_account_resolved_by_mapping(self, accounts, store):
        await accounts.save_account("coach1", "acct_coach1")

        result = await accounts.apply_processor_status({"id": "acct_coach1", "charges_enabled": True})

        assert result["provider_id"] == "coach1"
        assert store.coach_accounts["coach1"]["charges_enabled"] is True

    @pytest.mark.asyncio
    async def test_legacy_metadata_key(self, accounts):
        result = await accounts.apply_processor_status({"id": "acct_x", "metadata": {"coachId": "coach9"}})

        assert result["provider_id"] == "coach9"
        assert await accounts.find_provider_by_account_ref("acct_x") == "coach9"

    @pytest.mark.asyncio
    async def test_unknown_account_skipped(self, accounts, store):
        result = await accounts.apply_processor_status({"id": "acct_x"})

        assert result["status"] == "skipped"
        assert store.coach_accounts == {}


class TestStripeOnboardingCalls:

    @pytest.mark.asyncio
    async def test_create_account_params(self, monkeypatch):
        captured = {}

        def fake_create(**params):
            captured.update(params)
            return {"id": "acct_42", "charges_enabled": False, "payouts_enabled": False}

        monkeypatch.setattr(stripe.Account, "create", fake_create)
        processor = StripeProcessor(api_key="sk_test_123", webhook_secret="whsec_test")

        status = await processor.create_account("coach1", "Coach One", "coach@example.com", "golf", "CA")

        assert status.processor_account_ref == "acct_42"
        assert captured["type"] == "express"
        assert captured["capabilities"]["transfers"] == {"requested": True}
        assert captured["metadata"]["coach_id"] == "coach1"

    @pytest.mark.asyncio
    async def test_create_account_link(self, monkeypatch):
        monkeypatch.setattr(
            stripe.AccountLink, "create",
            lambda **params: {"url": f"https://connect.stripe.com/{params['account']}", "expires_at": 1773137100},
        )
        processor = StripeProcessor(api_key="sk_test_123", webhook_secret="whsec_test")

        link = await processor.create_account_link("acct_42", "https://app/r", "https://app/done")

        assert link.url == "https://connect.stripe.com/acct_42"
        assert link.expires_at.year == 2026

    @pytest.mark.asyncio
    async def test_stripe_error_wrapped(self, monkeypatch):
        def failing_create(**params):
            raise stripe.InvalidRequestError("No such account", param="account")

        monkeypatch.setattr(stripe.AccountLink, "create", failing_create)
        processor = StripeProcessor(api_key="sk_test_123", webhook_secret="whsec_test")

        with pytest.raises(ProcessorError):
            await processor.create_account_link("acct_missing", "https://app/r", "https://app/done")
