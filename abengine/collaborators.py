"""
Interfaces the engine consumes from the rest of the product.

The engine never renders, generates or deploys anything itself: it asks a
generator for hypotheses, a builder for the treatment artifact, and a
publisher to swap the live artifact once a decision is made.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from .models import ChangeType

logger = logging.getLogger(__name__)


@dataclass
class Hypothesis:
    text: str
    change_type: ChangeType = ChangeType.OTHER
    priority_score: float = 0.0
    content_ref: Optional[str] = None


class HypothesisGenerator(Protocol):
    def next_hypothesis(self, site_id: str, learnings: List[Dict[str, Any]]) -> Hypothesis:
        """Return one new hypothesis or raise HypothesisGenerationFailed."""


class Publisher(Protocol):
    def publish(self, site_id: str, content_ref: str) -> None:
        """Make content_ref the live artifact. Raise PublishFailed on failure."""

    def revert(self, site_id: str) -> None:
        """Restore the control artifact. Raise PublishFailed on failure."""


class VariantBuilder(Protocol):
    def build_treatment(self, site_id: str, item: Any) -> str:
        """Produce the treatment artifact for a backlog item, return its ref."""


class LoggingPublisher:
    """Publisher for hosts that deploy out of band: records decisions only."""

    def publish(self, site_id: str, content_ref: str) -> None:
        logger.info("publish site=%s content_ref=%s", site_id, content_ref)

    def revert(self, site_id: str) -> None:
        logger.info("revert site=%s", site_id)


class BacklogContentBuilder:
    """
    Uses the artifact attached to the backlog item, or the conventional
    variants/ location the deployer renders into.
    """

    def build_treatment(self, site_id: str, item: Any) -> str:
        if getattr(item, "content_ref", None):
            return item.content_ref
        return f"{site_id}/variants/backlog-{item.id}"
