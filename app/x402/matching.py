# app/x402/matching.py
"""
Select which advertised requirement a payment payload is trying to satisfy.

Requirements are scanned in advertised order and the first one whose
(scheme, network, asset) equals the payload's is selected. An exact-scheme
EVM payload does not name its asset, so the asset only participates when the
caller supplies one. When nothing matches, the first requirement is used
unless strict matching is requested.
"""
import logging
from typing import NamedTuple, Optional, Sequence, Union

from x402.types import PaymentPayload, PaymentRequirements

from app.x402.errors import PaymentErrorKind, PaymentFailure

logger = logging.getLogger(__name__)


class RequirementMatch(NamedTuple):
    index: int
    requirement: PaymentRequirements
    matched: bool


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").lower() == (b or "").lower()


def find_matching_requirement(
    requirements: Sequence[PaymentRequirements],
    payment_payload: PaymentPayload,
    asset: Optional[str] = None,
    strict: bool = False,
) -> Union[RequirementMatch, PaymentFailure]:
    """
    Find the requirement a payload targets.

    Args:
        requirements: Advertised requirements, in order
        payment_payload: Decoded payment payload
        asset: Asset address the payload declares, if known
        strict: Reject instead of falling back to the first requirement

    Returns:
        RequirementMatch with the selected index, or a NoMatchingRequirement
        failure when strict and nothing matches
    """
    if not requirements:
        raise ValueError("requirements must not be empty")

    for index, requirement in enumerate(requirements):
        if requirement.scheme != payment_payload.scheme:
            continue
        if requirement.network != payment_payload.network:
            continue
        if asset is not None and not _same(requirement.asset, asset):
            continue
        return RequirementMatch(index=index, requirement=requirement, matched=True)

    reason = (
        f"No requirement matches scheme={payment_payload.scheme} "
        f"network={payment_payload.network}"
    )
    if strict:
        logger.warning(f"x402: {reason}; rejecting (strict matching)")
        return PaymentFailure(kind=PaymentErrorKind.NO_MATCHING_REQUIREMENT, reason=reason)

    logger.warning(f"x402: {PaymentErrorKind.NO_MATCHING_REQUIREMENT.value}: {reason}; falling back to first requirement")
    return RequirementMatch(index=0, requirement=requirements[0], matched=False)
