"""
Client-facing purchase stages.

A purchase request stores only ``status`` and an optional ``admin_url``; the
tracker shown to users is derived from that pair. Every stored combination is
listed in ``STAGE_TABLE`` so the derivation is total.
"""

from typing import Optional, Union

from .models import PurchaseStage, PurchaseStatus

STAGE_TABLE: dict[tuple[PurchaseStatus, bool], PurchaseStage] = {
    (PurchaseStatus.PENDING, False): PurchaseStage.PENDING,
    (PurchaseStatus.PENDING, True): PurchaseStage.PROCESSING,
    (PurchaseStatus.PAYMENT_LINK_SENT, True): PurchaseStage.URL_SENT,
    # the tracker only shows a link once the admin url is set
    (PurchaseStatus.PAYMENT_LINK_SENT, False): PurchaseStage.PENDING,
    (PurchaseStatus.COMPLETED, True): PurchaseStage.COMPLETED,
    (PurchaseStatus.COMPLETED, False): PurchaseStage.COMPLETED,
}

STAGE_ORDER: tuple[PurchaseStage, ...] = (
    PurchaseStage.PENDING,
    PurchaseStage.URL_SENT,
    PurchaseStage.PROCESSING,
    PurchaseStage.COMPLETED,
)


def derive_stage(status: Union[PurchaseStatus, str], admin_url: Optional[str]) -> PurchaseStage:
    """Map a stored ``(status, admin_url)`` pair to its tracker stage.

    Raises ``ValueError`` for a status outside ``PurchaseStatus``.
    """
    has_url = bool(admin_url and admin_url.strip())
    return STAGE_TABLE[(PurchaseStatus(status), has_url)]


def stage_rank(stage: Union[PurchaseStage, str]) -> int:
    return STAGE_ORDER.index(PurchaseStage(stage))


def advance_stage(current: PurchaseStage, observed: PurchaseStage) -> PurchaseStage:
    """Return whichever of the two stages is further along; stages never regress."""
    return observed if stage_rank(observed) > stage_rank(current) else current


def is_terminal(stage: Union[PurchaseStage, str]) -> bool:
    return PurchaseStage(stage) == PurchaseStage.COMPLETED
