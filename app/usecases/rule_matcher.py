"""
Rule matching: selects the rules that apply to an incoming message.
"""

import logging
from typing import Callable, List

from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.config_cache import ConfigCache, RuleSnapshot, config_cache
from app.usecases.filter_evaluator import matches

logger = logging.getLogger(__name__)


class RuleMatcher:
    """Evaluates enabled rules in priority order against a message."""

    def __init__(
        self,
        session: AsyncSession,
        cache: ConfigCache = config_cache,
        evaluator: Callable = matches
    ):
        self.session = session
        self.cache = cache
        self.evaluator = evaluator

    async def select_rules(self, message) -> List[RuleSnapshot]:
        """
        Select matching rules for a message.

        Rules are evaluated one at a time in (priority, id) order. A matching
        rule with stop_processing ends the scan; rules after it are not
        evaluated at all.

        Args:
            message: IncomingMessage (or any object with its fields)

        Returns:
            Matching rules in evaluation order
        """
        rules = await self.cache.get_rules(self.session)
        selected: List[RuleSnapshot] = []

        for rule in rules:
            if not self.evaluator(rule.filters, message):
                continue

            selected.append(rule)

            if rule.stop_processing:
                logger.info(f"Rule {rule.id} ({rule.name}) stopped processing for message {message.id}")
                break

        logger.info(f"Message {message.id} matched {len(selected)} rule(s)")
        return selected
