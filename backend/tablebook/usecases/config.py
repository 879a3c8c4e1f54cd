import logging
from typing import Any, Mapping

from ..domain.errors import ForbiddenError, MalformedRequestError
from ..domain.policy import Actor, ReservationPolicy
from ..domain.repositories import PolicyStore

logger = logging.getLogger(__name__)


async def get_policy(policy_store: PolicyStore) -> ReservationPolicy:
    return await policy_store.get_policy()


async def update_policy(policy_store: PolicyStore, *, patch: Mapping[str, Any], actor: Actor) -> ReservationPolicy:
    if not actor.is_admin:
        raise ForbiddenError("only administrators can change the reservation policy")
    try:
        policy = await policy_store.update_policy(patch)
    except ValueError as exc:
        raise MalformedRequestError(str(exc)) from exc
    logger.info("reservation policy updated by admin %s: %s", actor.id, sorted(patch))
    return policy
