"""Pricing phase classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from amm_phase_monitor.ingestor.models import Phase, PoolSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseClassification:
    """Classified phase plus the two inputs it was derived from."""

    phase: Phase
    onchain_phase: Phase
    reserve_phase: Phase

    @property
    def agrees(self) -> bool:
        return self.onchain_phase is self.reserve_phase


def phase_for_reserve(reserve_balance: int, flat_curve_threshold: int) -> Phase:
    """Derive the phase from reserve alone; the threshold itself is bonding-curve."""
    if reserve_balance >= flat_curve_threshold:
        return Phase.BONDING_CURVE
    return Phase.FLAT


class PhaseClassifier:
    """Classifies a snapshot's pricing phase.

    The on-chain phase flag is authoritative. The reserve-vs-threshold check
    is a cross-check only: a mismatch is expected briefly around the
    threshold and is logged, never raised.
    """

    def classify(self, snapshot: PoolSnapshot) -> PhaseClassification:
        reserve_phase = phase_for_reserve(snapshot.reserve_balance, snapshot.flat_curve_threshold)
        classification = PhaseClassification(
            phase=snapshot.pricing_phase,
            onchain_phase=snapshot.pricing_phase,
            reserve_phase=reserve_phase,
        )
        if not classification.agrees:
            logger.warning(
                "Phase disagreement for %s at block %d: on-chain=%s, reserve-derived=%s "
                "(reserve=%d, threshold=%d); using on-chain flag",
                snapshot.pool_id,
                snapshot.block_height,
                snapshot.pricing_phase.label,
                reserve_phase.label,
                snapshot.reserve_balance,
                snapshot.flat_curve_threshold,
            )
        return classification
