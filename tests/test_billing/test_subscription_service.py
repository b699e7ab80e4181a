"""Tests for subscription service — lifecycle operations (pure DB, Stripe mocked)."""

import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
import stripe
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinvault.auth.identity import VerifiedIdentity
from coinvault.exceptions import (
    AuthorizationError,
    BusinessRuleError,
    IntegrationError,
    NotFoundError,
    ValidationError,
)
from coinvault.models.customer import StripeCustomer
from coinvault.models.plan import Plan
from coinvault.models.subscription import Subscription
from coinvault.models.user import User
from coinvault.schemas.subscription import (
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPause,
    SubscriptionQuery,
    SubscriptionResume,
    SubscriptionUpdate,
)
from coinvault.services import subscription_service


class _StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects)."""

    def __getitem__(self, key: str):
        return getattr(self, key)


def _make_stripe_sub(
    sub_id: str = "sub_test_123",
    customer: str = "cus_test_123",
    status: str = "active",
    price_id: str = "price_collector",
    **overrides,
) -> _StripeObj:
    fields = {
        "id": sub_id,
        "customer": customer,
        "status": status,
        "start_date": 1700000000,
        "current_period_start": 1700000000,
        "current_period_end": 1702600000,
        "ended_at": None,
        "cancel_at": None,
        "canceled_at": None,
        "pause_collection": None,
        "latest_invoice": None,
        "metadata": {},
        "items": _StripeObj(data=[_StripeObj(id="si_test_1", price=_StripeObj(id=price_id, nickname=None))]),
    }
    fields.update(overrides)
    return _StripeObj(**fields)


def _identity(user: User) -> VerifiedIdentity:
    return VerifiedIdentity(id=user.id, email=user.email, name=user.name, role=user.role)


async def _create_plan(
    db_session: AsyncSession,
    name: str = "Collector",
    price_id: str = "price_collector",
    amount: int = 900,
) -> Plan:
    plan = Plan(
        name=name,
        amount=amount,
        currency="usd",
        interval="month",
        interval_count=1,
        stripe_product_id=f"prod_{price_id}",
        stripe_price_id=price_id,
        is_active=True,
        metadata_={},
    )
    db_session.add(plan)
    await db_session.flush()
    return plan


async def _create_subscription(db_session: AsyncSession, user: User, **fields) -> Subscription:
    values = {"plan": "Collector", "status": "active", "metadata_": {}}
    values.update(fields)
    subscription = Subscription(user_id=user.id, **values)
    db_session.add(subscription)
    await db_session.flush()
    return subscription


async def _count_subscriptions(db_session: AsyncSession) -> int:
    result = await db_session.execute(select(func.count()).select_from(Subscription))
    return result.scalar_one()


@pytest_asyncio.fixture
async def collector_plan(db_session: AsyncSession) -> Plan:
    return await _create_plan(db_session)


# ---------------------------------------------------------------------------
# create_subscription
# ---------------------------------------------------------------------------


class TestCreateSubscription:
    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.create_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.create_customer", new_callable=AsyncMock)
    async def test_creates_customer_and_subscription(
        self,
        mock_create_customer,
        mock_create_sub,
        db_session: AsyncSession,
        test_user: User,
        collector_plan: Plan,
    ):
        """A first subscription creates the Stripe customer and mirrors the result."""
        mock_create_customer.return_value = _StripeObj(
            id="cus_new", email=test_user.email, metadata={"user_id": str(test_user.id)}
        )
        mock_create_sub.return_value = _make_stripe_sub(sub_id="sub_new", customer="cus_new")

        body = SubscriptionCreate(plan_id=str(collector_plan.id), metadata={"source": "web"})
        subscription = await subscription_service.create_subscription(
            db_session, _identity(test_user), body, is_admin=False
        )

        mock_create_customer.assert_awaited_once()
        assert mock_create_customer.call_args.kwargs["email"] == test_user.email
        create_kwargs = mock_create_sub.call_args.kwargs
        assert create_kwargs["customer_id"] == "cus_new"
        assert create_kwargs["price_id"] == "price_collector"
        assert create_kwargs["metadata"]["user_id"] == str(test_user.id)
        assert create_kwargs["metadata"]["plan_name"] == "Collector"
        assert create_kwargs["metadata"]["source"] == "web"

        assert subscription.user_id == test_user.id
        assert subscription.stripe_subscription_id == "sub_new"
        assert subscription.status == "active"
        assert subscription.plan_id == collector_plan.id
        assert subscription.metadata_["custom"] == {"source": "web"}

        mapping = await db_session.execute(
            select(StripeCustomer).where(StripeCustomer.user_id == test_user.id)
        )
        assert mapping.scalar_one().stripe_customer_id == "cus_new"

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.create_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.create_customer", new_callable=AsyncMock)
    async def test_existing_active_subscription_blocks(
        self,
        mock_create_customer,
        mock_create_sub,
        db_session: AsyncSession,
        test_user: User,
        collector_plan: Plan,
    ):
        await _create_subscription(db_session, test_user, status="active")

        body = SubscriptionCreate(plan_id=str(collector_plan.id))
        with pytest.raises(BusinessRuleError, match="already exists"):
            await subscription_service.create_subscription(
                db_session, _identity(test_user), body, is_admin=False
            )

        mock_create_customer.assert_not_awaited()
        mock_create_sub.assert_not_awaited()
        assert await _count_subscriptions(db_session) == 1

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.create_subscription", new_callable=AsyncMock)
    async def test_paused_subscription_blocks(
        self, mock_create_sub, db_session: AsyncSession, test_user: User, collector_plan: Plan
    ):
        await _create_subscription(db_session, test_user, status="paused")

        body = SubscriptionCreate(plan_id=str(collector_plan.id))
        with pytest.raises(BusinessRuleError):
            await subscription_service.create_subscription(
                db_session, _identity(test_user), body, is_admin=False
            )
        mock_create_sub.assert_not_awaited()

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.create_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.create_customer", new_callable=AsyncMock)
    async def test_canceled_subscription_does_not_block(
        self,
        mock_create_customer,
        mock_create_sub,
        db_session: AsyncSession,
        test_user: User,
        collector_plan: Plan,
    ):
        await _create_subscription(db_session, test_user, status="canceled")
        mock_create_customer.return_value = _StripeObj(id="cus_test_123", email=test_user.email, metadata={})
        mock_create_sub.return_value = _make_stripe_sub()

        body = SubscriptionCreate(plan_id=str(collector_plan.id))
        subscription = await subscription_service.create_subscription(
            db_session, _identity(test_user), body, is_admin=False
        )

        assert subscription.status == "active"
        assert await _count_subscriptions(db_session) == 2

    @pytest.mark.asyncio
    async def test_other_user_forbidden_for_non_admin(
        self, db_session: AsyncSession, test_user: User, other_user: User
    ):
        body = SubscriptionCreate(user_id=str(other_user.id), stripe_price_id="price_collector")
        with pytest.raises(AuthorizationError):
            await subscription_service.create_subscription(
                db_session, _identity(test_user), body, is_admin=False
            )

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.create_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.create_customer", new_callable=AsyncMock)
    async def test_admin_subscribes_other_user(
        self,
        mock_create_customer,
        mock_create_sub,
        db_session: AsyncSession,
        admin_user: User,
        other_user: User,
    ):
        """Admins bill another user; the customer gets the target's stored email."""
        mock_create_customer.return_value = _StripeObj(id="cus_other", email=other_user.email, metadata={})
        mock_create_sub.return_value = _make_stripe_sub(customer="cus_other", price_id="price_raw")

        body = SubscriptionCreate(user_id=str(other_user.id), stripe_price_id="price_raw", plan="Custom")
        subscription = await subscription_service.create_subscription(
            db_session, _identity(admin_user), body, is_admin=True
        )

        assert mock_create_customer.call_args.kwargs["email"] == other_user.email
        assert mock_create_customer.call_args.kwargs["name"] is None
        assert mock_create_sub.call_args.kwargs["metadata"]["plan_name"] == "Custom"
        assert subscription.user_id == other_user.id

    @pytest.mark.asyncio
    async def test_invalid_user_id(self, db_session: AsyncSession, test_user: User):
        body = SubscriptionCreate(user_id="not-a-uuid", stripe_price_id="price_collector")
        with pytest.raises(ValidationError, match="user identifier"):
            await subscription_service.create_subscription(
                db_session, _identity(test_user), body, is_admin=True
            )

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.create_subscription", new_callable=AsyncMock)
    async def test_plan_reference_required(self, mock_create_sub, db_session: AsyncSession, test_user: User):
        body = SubscriptionCreate(plan="Collector")
        with pytest.raises(ValidationError, match="plan_id or stripe_price_id"):
            await subscription_service.create_subscription(
                db_session, _identity(test_user), body, is_admin=False
            )
        mock_create_sub.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_plan_id(self, db_session: AsyncSession, test_user: User):
        body = SubscriptionCreate(plan_id=str(uuid.uuid4()))
        with pytest.raises(NotFoundError):
            await subscription_service.create_subscription(
                db_session, _identity(test_user), body, is_admin=False
            )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_my_active_subscription(self, db_session: AsyncSession, test_user: User):
        await _create_subscription(db_session, test_user, status="canceled")
        assert await subscription_service.get_my_active_subscription(db_session, test_user.id) is None

        active = await _create_subscription(db_session, test_user, status="trialing")
        found = await subscription_service.get_my_active_subscription(db_session, test_user.id)
        assert found.id == active.id

    @pytest.mark.asyncio
    async def test_list_my_subscriptions_only_mine(
        self, db_session: AsyncSession, test_user: User, other_user: User
    ):
        await _create_subscription(db_session, test_user)
        await _create_subscription(db_session, other_user)

        mine = await subscription_service.list_my_subscriptions(db_session, test_user.id)
        assert len(mine) == 1
        assert mine[0].user_id == test_user.id

    @pytest.mark.asyncio
    async def test_get_subscription_access(
        self, db_session: AsyncSession, test_user: User, other_user: User
    ):
        subscription = await _create_subscription(db_session, test_user)

        found = await subscription_service.get_subscription(
            db_session, str(subscription.id), test_user.id, is_admin=False
        )
        assert found.id == subscription.id

        with pytest.raises(AuthorizationError):
            await subscription_service.get_subscription(
                db_session, str(subscription.id), other_user.id, is_admin=False
            )

        as_admin = await subscription_service.get_subscription(
            db_session, str(subscription.id), other_user.id, is_admin=True
        )
        assert as_admin.id == subscription.id

    @pytest.mark.asyncio
    async def test_get_subscription_bad_ids(self, db_session: AsyncSession, test_user: User):
        with pytest.raises(ValidationError):
            await subscription_service.get_subscription(db_session, "nope", test_user.id, is_admin=False)

        missing = uuid.uuid4()
        with pytest.raises(NotFoundError, match=str(missing)):
            await subscription_service.get_subscription(db_session, str(missing), test_user.id, is_admin=False)


class TestListSubscriptions:
    @pytest_asyncio.fixture
    async def catalog(self, db_session: AsyncSession, test_user: User, other_user: User):
        await _create_subscription(
            db_session, test_user, plan="Collector", status="active", started_at=datetime(2026, 1, 10)
        )
        await _create_subscription(
            db_session, test_user, plan="Numismatist", status="canceled", started_at=datetime(2026, 2, 10)
        )
        await _create_subscription(
            db_session, other_user, plan="Numismatist Annual", status="active", started_at=datetime(2026, 3, 10)
        )

    @pytest.mark.asyncio
    async def test_status_filter(self, db_session: AsyncSession, catalog):
        page = await subscription_service.list_subscriptions(db_session, SubscriptionQuery(status="active"))
        assert page["total"] == 2
        assert {s.status for s in page["items"]} == {"active"}

    @pytest.mark.asyncio
    async def test_plan_filter_is_case_insensitive_substring(self, db_session: AsyncSession, catalog):
        page = await subscription_service.list_subscriptions(db_session, SubscriptionQuery(plan="numis"))
        assert page["total"] == 2

    @pytest.mark.asyncio
    async def test_user_and_date_filters(self, db_session: AsyncSession, catalog, test_user: User):
        query = SubscriptionQuery(user_id=str(test_user.id), started_from=datetime(2026, 2, 1))
        page = await subscription_service.list_subscriptions(db_session, query)
        assert page["total"] == 1
        assert page["items"][0].plan == "Numismatist"

    @pytest.mark.asyncio
    async def test_pagination_and_sorting(self, db_session: AsyncSession, catalog):
        query = SubscriptionQuery(page=2, limit=2, sort_by="plan", sort_order="asc")
        page = await subscription_service.list_subscriptions(db_session, query)

        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert page["page"] == 2
        assert [s.plan for s in page["items"]] == ["Numismatist Annual"]

    @pytest.mark.asyncio
    async def test_empty_listing(self, db_session: AsyncSession):
        page = await subscription_service.list_subscriptions(db_session, SubscriptionQuery())
        assert page == {"items": [], "total": 0, "page": 1, "limit": 10, "total_pages": 0}

    @pytest.mark.asyncio
    async def test_unknown_sort_column(self, db_session: AsyncSession):
        with pytest.raises(ValidationError, match="Cannot sort by"):
            await subscription_service.list_subscriptions(db_session, SubscriptionQuery(sort_by="password"))


# ---------------------------------------------------------------------------
# update_subscription
# ---------------------------------------------------------------------------


class TestUpdateSubscription:
    @pytest.mark.asyncio
    async def test_local_update_and_explicit_nulls(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(
            db_session,
            test_user,
            pause_reason="vacation",
            stripe_invoice_url="https://invoice.test/1",
            metadata_={"custom": {"source": "api"}},
        )

        body = SubscriptionUpdate(plan="Numismatist", pause_reason=None, metadata={"tier": 2})
        updated = await subscription_service.update_subscription(
            db_session, str(subscription.id), test_user.id, body, is_admin=False
        )

        assert updated.plan == "Numismatist"
        assert updated.pause_reason is None
        assert updated.stripe_invoice_url == "https://invoice.test/1"
        assert updated.metadata_["custom"] == {"source": "api", "tier": 2}
        assert updated.last_event_at is not None

    @pytest.mark.asyncio
    async def test_local_status_and_plan_id(self, db_session: AsyncSession, test_user: User, collector_plan: Plan):
        subscription = await _create_subscription(db_session, test_user, plan=None)

        body = SubscriptionUpdate(status="past_due", plan_id=str(collector_plan.id))
        updated = await subscription_service.update_subscription(
            db_session, str(subscription.id), test_user.id, body, is_admin=False
        )

        assert updated.status == "past_due"
        assert updated.plan_id == collector_plan.id

    @pytest.mark.asyncio
    async def test_other_user_cannot_update(
        self, db_session: AsyncSession, test_user: User, other_user: User
    ):
        subscription = await _create_subscription(db_session, test_user)
        with pytest.raises(AuthorizationError):
            await subscription_service.update_subscription(
                db_session, str(subscription.id), other_user.id, SubscriptionUpdate(plan="x"), is_admin=False
            )

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.update_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.get_subscription", new_callable=AsyncMock)
    async def test_external_plan_change_swaps_price(
        self,
        mock_get_sub,
        mock_update_sub,
        db_session: AsyncSession,
        test_user: User,
        collector_plan: Plan,
    ):
        upgraded = await _create_plan(db_session, name="Numismatist", price_id="price_numismatist", amount=2900)
        subscription = await _create_subscription(
            db_session, test_user, plan_id=collector_plan.id, stripe_subscription_id="sub_test_123"
        )
        mock_get_sub.return_value = _make_stripe_sub(metadata={"user_id": str(test_user.id)})
        mock_update_sub.return_value = _make_stripe_sub(price_id="price_numismatist")

        body = SubscriptionUpdate(plan_id=str(upgraded.id), metadata={"upgrade": "yes"})
        updated = await subscription_service.update_subscription(
            db_session, str(subscription.id), test_user.id, body, is_admin=False
        )

        mock_update_sub.assert_awaited_once_with(
            "sub_test_123",
            {
                "items": [{"id": "si_test_1", "price": "price_numismatist"}],
                "metadata": {"user_id": str(test_user.id), "upgrade": "yes"},
            },
        )
        assert updated.plan == "Numismatist"
        assert updated.plan_id == upgraded.id
        assert updated.metadata_["custom"] == {"upgrade": "yes"}

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.update_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.get_subscription", new_callable=AsyncMock)
    async def test_external_metadata_merges_sdk_metadata(
        self, mock_get_sub, mock_update_sub, db_session: AsyncSession, test_user: User
    ):
        subscription = await _create_subscription(db_session, test_user, stripe_subscription_id="sub_sdk_1")
        mock_get_sub.return_value = stripe.Subscription.construct_from(
            {
                "id": "sub_sdk_1",
                "object": "subscription",
                "customer": "cus_test_123",
                "status": "active",
                "metadata": {"user_id": str(test_user.id)},
                "items": {
                    "object": "list",
                    "data": [{"id": "si_sdk_1", "object": "subscription_item", "price": "price_collector"}],
                },
            },
            "sk_test_dummy",
        )
        mock_update_sub.return_value = _make_stripe_sub(sub_id="sub_sdk_1")

        body = SubscriptionUpdate(metadata={"gift": True})
        await subscription_service.update_subscription(
            db_session, str(subscription.id), test_user.id, body, is_admin=False
        )

        mock_update_sub.assert_awaited_once_with(
            "sub_sdk_1", {"metadata": {"user_id": str(test_user.id), "gift": "true"}}
        )

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.update_subscription", new_callable=AsyncMock)
    @patch("coinvault.billing.stripe_client.get_subscription", new_callable=AsyncMock)
    async def test_external_same_price_skips_stripe_update(
        self, mock_get_sub, mock_update_sub, db_session: AsyncSession, test_user: User
    ):
        subscription = await _create_subscription(db_session, test_user, stripe_subscription_id="sub_test_123")
        mock_get_sub.return_value = _make_stripe_sub()

        body = SubscriptionUpdate(stripe_price_id="price_collector", cancel_reason="n/a")
        updated = await subscription_service.update_subscription(
            db_session, str(subscription.id), test_user.id, body, is_admin=False
        )

        mock_update_sub.assert_not_awaited()
        assert updated.cancel_reason == "n/a"


# ---------------------------------------------------------------------------
# pause / resume / cancel
# ---------------------------------------------------------------------------


class TestLocalLifecycle:
    @pytest.mark.asyncio
    async def test_pause_then_resume(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user)

        paused = await subscription_service.pause_subscription(
            db_session, str(subscription.id), test_user.id, SubscriptionPause(reason="vacation"), is_admin=False
        )
        assert paused.status == "paused"
        assert paused.pause_reason == "vacation"
        assert paused.ended_at is not None

        resumed = await subscription_service.resume_subscription(
            db_session, str(subscription.id), test_user.id, SubscriptionResume(), is_admin=False
        )
        assert resumed.status == "active"
        assert resumed.pause_reason is None
        assert resumed.ended_at is None
        assert resumed.started_at is not None

    @pytest.mark.asyncio
    async def test_resume_applies_plan_and_invoice(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, status="paused")

        body = SubscriptionResume(plan="Numismatist", stripe_invoice_url="https://invoice.test/2")
        resumed = await subscription_service.resume_subscription(
            db_session, str(subscription.id), test_user.id, body, is_admin=False
        )

        assert resumed.plan == "Numismatist"
        assert resumed.stripe_invoice_url == "https://invoice.test/2"

    @pytest.mark.asyncio
    async def test_pause_requires_active(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, status="paused")
        with pytest.raises(BusinessRuleError, match="Only active"):
            await subscription_service.pause_subscription(
                db_session, str(subscription.id), test_user.id, SubscriptionPause(), is_admin=False
            )

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, status="active")
        with pytest.raises(BusinessRuleError, match="Only paused"):
            await subscription_service.resume_subscription(
                db_session, str(subscription.id), test_user.id, SubscriptionResume(), is_admin=False
            )

    @pytest.mark.asyncio
    async def test_cancel_local(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user)

        canceled = await subscription_service.cancel_subscription(
            db_session, str(subscription.id), test_user.id, SubscriptionCancel(reason="too pricey"), is_admin=False
        )

        assert canceled.status == "canceled"
        assert canceled.cancel_reason == "too pricey"
        assert canceled.ended_at is not None
        assert canceled.canceled_at == canceled.ended_at

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.cancel_subscription", new_callable=AsyncMock)
    async def test_cancel_twice_rejected_without_stripe_call(
        self, mock_cancel, db_session: AsyncSession, test_user: User
    ):
        subscription = await _create_subscription(
            db_session, test_user, status="canceled", stripe_subscription_id="sub_test_123"
        )

        with pytest.raises(BusinessRuleError, match="already canceled"):
            await subscription_service.cancel_subscription(
                db_session, str(subscription.id), test_user.id, SubscriptionCancel(), is_admin=False
            )
        mock_cancel.assert_not_awaited()


class TestExternalLifecycle:
    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.update_subscription", new_callable=AsyncMock)
    async def test_pause_pushes_pause_collection(self, mock_update_sub, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, stripe_subscription_id="sub_test_123")
        mock_update_sub.return_value = _make_stripe_sub(
            pause_collection=_StripeObj(behavior="mark_uncollectible"),
            metadata={"pause_reason": "vacation"},
        )

        paused = await subscription_service.pause_subscription(
            db_session, str(subscription.id), test_user.id, SubscriptionPause(reason="vacation"), is_admin=False
        )

        mock_update_sub.assert_awaited_once_with(
            "sub_test_123",
            {
                "pause_collection": {"behavior": "mark_uncollectible"},
                "metadata": {"pause_reason": "vacation"},
            },
        )
        assert paused.status == "paused"
        assert paused.pause_reason == "vacation"
        assert paused.metadata_["custom"] == {"pause_reason": "vacation"}

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.update_subscription", new_callable=AsyncMock)
    async def test_resume_unsets_pause_collection(self, mock_update_sub, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(
            db_session,
            test_user,
            status="paused",
            pause_reason="vacation",
            stripe_subscription_id="sub_test_123",
        )
        mock_update_sub.return_value = _make_stripe_sub()

        resumed = await subscription_service.resume_subscription(
            db_session, str(subscription.id), test_user.id, SubscriptionResume(), is_admin=False
        )

        mock_update_sub.assert_awaited_once_with("sub_test_123", {"pause_collection": ""})
        assert resumed.status == "active"
        assert resumed.pause_reason is None

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.cancel_subscription", new_callable=AsyncMock)
    async def test_cancel_calls_stripe(self, mock_cancel, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, stripe_subscription_id="sub_test_123")
        mock_cancel.return_value = _make_stripe_sub(status="canceled", canceled_at=1703000000, ended_at=1703000000)

        canceled = await subscription_service.cancel_subscription(
            db_session, str(subscription.id), test_user.id, SubscriptionCancel(reason="moving on"), is_admin=False
        )

        mock_cancel.assert_awaited_once_with("sub_test_123", reason="moving on")
        assert canceled.status == "canceled"
        assert canceled.cancel_reason == "moving on"
        assert canceled.canceled_at == datetime(2023, 12, 19, 15, 33, 20)

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.update_subscription", new_callable=AsyncMock)
    async def test_stripe_failure_leaves_row_untouched(
        self, mock_update_sub, db_session: AsyncSession, test_user: User
    ):
        subscription = await _create_subscription(db_session, test_user, stripe_subscription_id="sub_test_123")
        mock_update_sub.side_effect = IntegrationError("Stripe subscription update failed: boom")

        with pytest.raises(IntegrationError):
            await subscription_service.pause_subscription(
                db_session, str(subscription.id), test_user.id, SubscriptionPause(), is_admin=False
            )
        assert subscription.status == "active"


# ---------------------------------------------------------------------------
# delete_subscription
# ---------------------------------------------------------------------------


class TestDeleteSubscription:
    @pytest.mark.asyncio
    async def test_non_admin_cannot_delete_live(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, status="active")
        with pytest.raises(BusinessRuleError, match="canceled or expired"):
            await subscription_service.delete_subscription(
                db_session, str(subscription.id), test_user.id, is_admin=False
            )

    @pytest.mark.asyncio
    async def test_non_admin_deletes_expired(self, db_session: AsyncSession, test_user: User):
        subscription = await _create_subscription(db_session, test_user, status="expired")
        subscription_id = subscription.id

        await subscription_service.delete_subscription(db_session, str(subscription_id), test_user.id, is_admin=False)

        assert await db_session.get(Subscription, subscription_id) is None

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.cancel_subscription", new_callable=AsyncMock)
    async def test_admin_delete_cancels_in_stripe_first(
        self, mock_cancel, db_session: AsyncSession, test_user: User, admin_user: User
    ):
        subscription = await _create_subscription(db_session, test_user, stripe_subscription_id="sub_test_123")
        subscription_id = subscription.id
        mock_cancel.return_value = _make_stripe_sub(status="canceled", canceled_at=1703000000)

        await subscription_service.delete_subscription(db_session, str(subscription_id), admin_user.id, is_admin=True)

        mock_cancel.assert_awaited_once_with("sub_test_123", reason="Deleted via API")
        assert await db_session.get(Subscription, subscription_id) is None

    @pytest.mark.asyncio
    @patch("coinvault.billing.stripe_client.cancel_subscription", new_callable=AsyncMock)
    async def test_canceled_external_is_not_recanceled(
        self, mock_cancel, db_session: AsyncSession, test_user: User
    ):
        subscription = await _create_subscription(
            db_session, test_user, status="canceled", stripe_subscription_id="sub_test_123"
        )

        await subscription_service.delete_subscription(db_session, str(subscription.id), test_user.id, is_admin=False)

        mock_cancel.assert_not_awaited()
        assert await _count_subscriptions(db_session) == 0
