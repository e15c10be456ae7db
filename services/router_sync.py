"""Best-effort synchronisation of subscriptions to the MikroTik router.

Router failures never break billing: every call returns a ``RouterResult``
and the caller turns a failure into a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from mikrotik_client import MikrotikClient, MikrotikError
from models import Plan, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterResult:
    success: bool
    error: Optional[str] = None
    skipped: bool = False


def get_router() -> Optional[MikrotikClient]:
    """Return a router client when the integration is enabled and configured."""
    config = current_app.config["MIKROTIK_CONFIG"]
    if not config.enabled or not config.host:
        return None
    return MikrotikClient(config)


def profile_for_plan(plan: Plan) -> str:
    profiles = current_app.config["MIKROTIK_CONFIG"].plan_profiles
    return profiles.get(plan.name, plan.name)


def _account_name(subscription: Subscription) -> Optional[str]:
    secret = subscription.ppp_secret
    return secret.name if secret else None


def _run(subscription: Subscription, router, action: str, call) -> RouterResult:
    router = router if router is not None else get_router()
    if router is None:
        return RouterResult(success=True, skipped=True)
    name = _account_name(subscription)
    if not name:
        logger.info("Subscription %s has no router account; skipping %s", subscription.id, action)
        return RouterResult(success=True, skipped=True)
    try:
        call(router, name)
    except MikrotikError as e:
        logger.warning("Router %s failed for subscription %s: %s", action, subscription.id, e)
        return RouterResult(success=False, error=str(e))
    return RouterResult(success=True)


def sync_plan_profile(subscription: Subscription, plan: Plan, router=None) -> RouterResult:
    profile = profile_for_plan(plan)

    def call(client, name):
        client.update_profile(name, {"profile": profile})
        subscription.ppp_secret.profile = profile

    return _run(subscription, router, "profile sync", call)


def enable_account(subscription: Subscription, router=None) -> RouterResult:
    profile = profile_for_plan(subscription.plan)

    def call(client, name):
        client.update_profile(name, {"profile": profile})
        client.set_disabled(name, False)
        subscription.ppp_secret.profile = profile

    return _run(subscription, router, "activation", call)


def disable_account(subscription: Subscription, router=None) -> RouterResult:
    profile = current_app.config["MIKROTIK_CONFIG"].disconnected_profile

    def call(client, name):
        client.update_profile(name, {"profile": profile})
        client.set_disabled(name, True)
        subscription.ppp_secret.profile = profile

    return _run(subscription, router, "disconnection", call)


def create_account(subscription: Subscription, name: str, password: str, router=None) -> RouterResult:
    router = router if router is not None else get_router()
    if router is None:
        return RouterResult(success=True, skipped=True)
    try:
        router.add_account({
            "name": name,
            "password": password,
            "service": "pppoe",
            "profile": profile_for_plan(subscription.plan),
            "comment": subscription.customer.name if subscription.customer else "",
        })
    except MikrotikError as e:
        logger.warning("Router account creation failed for subscription %s: %s", subscription.id, e)
        return RouterResult(success=False, error=str(e))
    return RouterResult(success=True)
