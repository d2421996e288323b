"""
Filter predicate evaluation for forwarding rules.

A rule's ``filters`` is a JSON object whose keys name predicates over the
incoming message. An empty object matches everything (catch-all rules).
All recognised keys must hold. Unknown keys are skipped with a warning so
that rules written for a newer predicate set keep loading.
"""

import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def _contains(value: Any, message) -> bool:
    """Case-sensitive substring test against the message body."""
    if not isinstance(value, str):
        logger.warning(f"Filter 'contains' expects a string, got {type(value).__name__}; not matching")
        return False
    return value in (message.body or "")


# Predicate key -> evaluator(value, message)
PREDICATES: Dict[str, Callable[[Any, Any], bool]] = {
    "contains": _contains,
}


def matches(filters: Optional[Dict[str, Any]], message) -> bool:
    """
    Decide whether a message satisfies a rule's filters.

    Args:
        filters: Predicate object from the rule (may be None or empty)
        message: Object exposing the IncomingMessage fields

    Returns:
        True if every recognised predicate holds
    """
    if not filters:
        return True

    for key, value in filters.items():
        predicate = PREDICATES.get(key)
        if predicate is None:
            logger.warning(f"Ignoring unknown filter key: {key}")
            continue
        if not predicate(value, message):
            return False

    return True
